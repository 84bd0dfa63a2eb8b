import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from citizen_api.constants import Module
from citizen_api.services.audit_service import AuditSink
from citizen_api.services.category_router import CategoryRouter
from citizen_api.services.conversation_engine import ConversationEngine
from citizen_api.services.dedup_service import MessageDeduplicator
from citizen_api.services.followup_service import InMemoryFollowUpQueue
from citizen_api.services.grievance_service import GrievanceFinalizer, GrievanceStore, format_grievance_id
from citizen_api.services.message_catalog import MessageCatalog
from citizen_api.services.otp_service import InMemoryOtpStore, OtpVerifier
from citizen_api.services.result import Result
from citizen_api.services.session_locks import InMemorySessionLocks
from citizen_api.services.session_store import InMemorySessionStore
from citizen_api.services.tenant_directory import (
    ChannelCredentials,
    DepartmentInfo,
    InMemoryTenantDirectory,
    TenantConfig,
)
from citizen_api.services.webhook_service import WebhookProcessor
from citizen_api.services.whatsapp_service import WhatsAppGateway

CHANNEL_ID = "PNID-1"
TENANT_ID = "tenant-1"
CITIZEN = "919800000001"
FIXED_CODE = "123456"


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeGrievanceStore(GrievanceStore):
    def __init__(self, fail: bool = False):
        self.records = []
        self.fail = fail

    def create(self, record):
        if self.fail:
            raise RuntimeError("database unavailable")
        self.records.append(record)
        return format_grievance_id(len(self.records))


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.events = []

    def record(self, action, resource, resource_id=None, tenant_id=None, details=None):
        self.events.append((action, resource, resource_id, tenant_id, details))


class RecordingGateway(WhatsAppGateway):
    """Captures engine replies instead of calling the Cloud API."""

    def __init__(self):
        super().__init__()
        self.sent = []

    async def deliver(self, channel, to, message):
        await asyncio.sleep(0)
        self.sent.append((to, message))
        return Result.success(f"wamid.{len(self.sent)}")

    @property
    def bodies(self) -> list[str]:
        return [message.body for _, message in self.sent]


class FixedCodeVerifier(OtpVerifier):
    def _generate(self) -> str:
        return FIXED_CODE


def build_tenant(modules=(Module.GRIEVANCE, Module.APPOINTMENT), departments=None, **overrides) -> TenantConfig:
    if departments is None:
        departments = (
            DepartmentInfo("dept-water", "Water Supply", ("water",)),
            DepartmentInfo("dept-roads", "Public Works", ("roads", "streetlight")),
            DepartmentInfo("dept-health", "Health", ()),
        )
    values = {
        "tenant_id": TENANT_ID,
        "name": "Zilla Parishad",
        "channel": ChannelCredentials(phone_number_id=CHANNEL_ID, access_token="token"),
        "enabled_modules": frozenset(modules),
        "departments": tuple(departments),
    }
    values.update(overrides)
    return TenantConfig(**values)


def _message_payload(message: dict, channel_id: str = CHANNEL_ID, contact_name: str = "Asha") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"display_phone_number": "15550001111", "phone_number_id": channel_id},
                            "contacts": [{"wa_id": message["from"], "profile": {"name": contact_name}}],
                            "messages": [message],
                        },
                    }
                ],
            }
        ],
    }


def text_payload(text: str, message_id: str, sender: str = CITIZEN, channel_id: str = CHANNEL_ID) -> dict:
    message = {"from": sender, "id": message_id, "timestamp": "1768467600", "type": "text", "text": {"body": text}}
    return _message_payload(message, channel_id)


def button_payload(option_id: str, title: str, message_id: str, sender: str = CITIZEN) -> dict:
    message = {
        "from": sender,
        "id": message_id,
        "timestamp": "1768467600",
        "type": "interactive",
        "interactive": {"type": "button_reply", "button_reply": {"id": option_id, "title": title}},
    }
    return _message_payload(message)


def image_payload(media_id: str, message_id: str, caption: str | None = None, sender: str = CITIZEN) -> dict:
    image = {"id": media_id, "mime_type": "image/jpeg"}
    if caption:
        image["caption"] = caption
    message = {"from": sender, "id": message_id, "timestamp": "1768467600", "type": "image", "image": image}
    return _message_payload(message)


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tenant():
    return build_tenant()


@pytest.fixture
def tenant_with():
    """Build a tenant with overridden modules or departments."""
    return build_tenant


@pytest.fixture
def make_pipeline(clock):
    """Build a WebhookProcessor over in-process backends and recording fakes."""

    def _make(tenant=None, store_fails=False, max_attempts=5, tenants=None):
        tenant = tenant or build_tenant()
        store = FakeGrievanceStore(fail=store_fails)
        audit = RecordingAuditSink()
        gateway = RecordingGateway()
        sessions = InMemorySessionStore()
        followups = InMemoryFollowUpQueue()
        router = CategoryRouter()
        otp = FixedCodeVerifier(InMemoryOtpStore(), length=6, ttl_seconds=300, max_attempts=max_attempts, clock=clock)
        engine = ConversationEngine(
            otp=otp,
            router=router,
            finalizer=GrievanceFinalizer(router, store, audit),
            catalog=MessageCatalog(),
            followup_delay_seconds=2,
            clock=clock,
        )
        processor = WebhookProcessor(
            tenants=tenants or InMemoryTenantDirectory([tenant]),
            sessions=sessions,
            locks=InMemorySessionLocks(),
            dedup=MessageDeduplicator(None, ttl_seconds=3600),
            engine=engine,
            gateway=gateway,
            followups=followups,
            audit_sink=audit,
            otp_length=6,
            clock=clock,
        )
        return SimpleNamespace(
            processor=processor,
            engine=engine,
            gateway=gateway,
            store=store,
            audit=audit,
            sessions=sessions,
            followups=followups,
            otp=otp,
            tenant=tenant,
            clock=clock,
        )

    return _make


@pytest.fixture
def payloads():
    return SimpleNamespace(text=text_payload, button=button_payload, image=image_payload)
