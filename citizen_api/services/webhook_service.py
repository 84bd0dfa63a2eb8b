"""Inbound webhook pipeline: dedup -> tenant -> lock -> session -> engine -> save -> send."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError

from citizen_api.constants import AuditAction
from citizen_api.logging_config import get_context_logger, get_logger
from citizen_api.schemas.webhook import WebhookPayload, WhatsAppMessage
from citizen_api.services.audit_service import AuditSink, message_preview, safe_record
from citizen_api.services.conversation_engine import ConversationEngine, Transition
from citizen_api.services.dedup_service import MessageDeduplicator
from citizen_api.services.followup_service import FollowUp, FollowUpQueue
from citizen_api.services.intents import InboundEvent, derive_intent, event_from_message
from citizen_api.services.outbound import OutboundMessage
from citizen_api.services.session_locks import SessionLockManager
from citizen_api.services.session_store import Session, SessionStore
from citizen_api.services.tenant_directory import TenantConfig, TenantDirectory
from citizen_api.services.whatsapp_service import NOT_CONFIGURED, WhatsAppGateway

logger = get_logger("webhook_service")

WHATSAPP_OBJECT = "whatsapp_business_account"

PROCESSED = "processed"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProcessingSummary:
    received: int = 0
    processed: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0

    def count(self, outcome: str) -> None:
        if outcome == PROCESSED:
            self.processed += 1
        elif outcome == DUPLICATE:
            self.duplicates += 1
        elif outcome == SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


def extract_events(payload: dict[str, Any]) -> list[InboundEvent]:
    """Pull every citizen message out of a Cloud API payload.

    Status callbacks are ignored. A malformed message is logged and skipped without
    affecting the others in the same delivery.
    """
    parsed = WebhookPayload.model_validate(payload)
    events: list[InboundEvent] = []
    for entry in parsed.entry:
        for change in entry.changes:
            value = change.value
            if value is None or not value.messages:
                continue
            channel_id = value.metadata.phone_number_id if value.metadata else None
            if not channel_id:
                logger.warning("Webhook change without phone_number_id", extra={"context": {"entry_id": entry.id}})
                continue
            names = {
                contact.wa_id: contact.profile.name
                for contact in value.contacts
                if contact.wa_id and contact.profile is not None
            }
            for raw in value.messages:
                try:
                    message = WhatsAppMessage.model_validate(raw)
                except ValidationError as e:
                    logger.warning(
                        "Skipping malformed webhook message",
                        extra={"context": {"channel_id": channel_id, "error": str(e)[:300]}},
                    )
                    continue
                events.append(event_from_message(message, channel_id, names.get(message.sender)))
    return events


class WebhookProcessor:
    def __init__(
        self,
        *,
        tenants: TenantDirectory,
        sessions: SessionStore,
        locks: SessionLockManager,
        dedup: MessageDeduplicator,
        engine: ConversationEngine,
        gateway: WhatsAppGateway,
        followups: FollowUpQueue,
        audit_sink: Optional[AuditSink] = None,
        otp_length: int = 6,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.tenants = tenants
        self.sessions = sessions
        self.locks = locks
        self.dedup = dedup
        self.engine = engine
        self.gateway = gateway
        self.followups = followups
        self.audit_sink = audit_sink
        self.otp_length = otp_length
        self.clock = clock

    # === INBOUND ===

    async def process_payload(self, payload: dict[str, Any]) -> ProcessingSummary:
        """Process one webhook delivery. Never raises."""
        summary = ProcessingSummary()
        try:
            events = extract_events(payload)
        except Exception as e:
            logger.warning(f"Malformed webhook payload: {e}")
            return summary

        summary.received = len(events)
        for event in events:
            try:
                outcome = await self.process_event(event)
            except Exception:
                logger.exception(
                    "Webhook event processing failed",
                    extra={"context": {"channel_id": event.channel_id, "message_id": event.provider_message_id}},
                )
                outcome = FAILED
            summary.count(outcome)

        if summary.received:
            logger.info(
                "Webhook delivery processed",
                extra={"context": asdict(summary)},
            )
        return summary

    async def process_event(self, event: InboundEvent) -> str:
        log = get_context_logger(
            "webhook_service",
            channel_id=event.channel_id,
            message_id=event.provider_message_id,
            phone=event.sender,
        )

        if not await self.dedup.claim(event.channel_id, event.provider_message_id):
            return DUPLICATE

        try:
            tenant = self.tenants.get_by_channel(event.channel_id)
        except Exception:
            log.exception("Tenant lookup failed")
            await self.dedup.release(event.channel_id, event.provider_message_id)
            return FAILED

        if tenant is None:
            log.info("No active tenant for channel, dropping event")
            return SKIPPED

        intent = derive_intent(event, self.otp_length)
        result: Optional[Transition] = None
        try:
            async with self.locks.hold(tenant.tenant_id, event.sender):
                session = await self.sessions.get(tenant.tenant_id, event.sender)
                step_before = session.step
                result = await self.engine.handle(session, intent, event, tenant)
                stored = await self._store_session(session, result, log)
                await self._deliver(tenant, event.sender, result.messages)
        except Exception:
            if result is None:
                log.exception("Session update failed, dropping event")
                await self.dedup.release(event.channel_id, event.provider_message_id)
                return FAILED
            # Only the lock exit can fail once the transition exists.
            log.exception("Session lock release failed after transition")

        await self._schedule(result.followups)
        safe_record(
            self.audit_sink,
            AuditAction.CREATE,
            "WhatsAppMessage",
            resource_id=event.provider_message_id,
            tenant_id=tenant.tenant_id,
            details={
                "from": event.sender,
                "type": event.kind.value,
                "intent": intent.kind.value,
                "step": step_before.value,
                "text": message_preview(event.display_text),
            },
        )
        return PROCESSED if stored else FAILED

    async def _store_session(self, session: Session, result: Transition, log) -> bool:
        """Persist the computed transition.

        The handler may already have filed a grievance, so a failure here keeps the dedup
        claim: a redelivery must not replay the step.
        """
        try:
            if result.clear_session:
                await self.sessions.delete(session.tenant_id, session.phone_number)
            else:
                await self.sessions.save(session)
        except Exception:
            log.exception("Session store failed after transition, keeping message claimed")
            return False
        return True

    async def _deliver(self, tenant: TenantConfig, to: str, messages: list[OutboundMessage]) -> int:
        """Send replies in order. Failures are logged and never undo the transition."""
        sent = 0
        for message in messages:
            try:
                result = await self.gateway.deliver(tenant.channel, to, message)
            except Exception:
                logger.exception("Outbound send crashed", extra={"context": {"tenant_id": tenant.tenant_id, "to": to}})
                continue
            if result.ok:
                sent += 1
                continue
            logger.warning(
                f"Outbound send failed: {result.error}",
                extra={"context": {"tenant_id": tenant.tenant_id, "to": to, "error_code": result.error_code}},
            )
            if result.error_code == NOT_CONFIGURED:
                break
        return sent

    async def _schedule(self, followups: list[FollowUp]) -> None:
        for followup in followups:
            try:
                await self.followups.schedule(followup)
            except Exception as e:
                logger.warning(
                    f"Failed to schedule follow-up: {e}",
                    extra={"context": {"tenant_id": followup.tenant_id, "phone": followup.phone_number}},
                )

    # === BACKGROUND WORK ===

    async def run_due_followups(self, now: Optional[datetime] = None, limit: int = 50) -> int:
        now = now or self.clock()
        try:
            due = await self.followups.pop_due(now, limit)
        except Exception as e:
            logger.warning(f"Follow-up queue unavailable: {e}")
            return 0

        delivered = 0
        for followup in due:
            try:
                if await self._run_followup(followup):
                    delivered += 1
            except Exception:
                logger.exception(
                    "Follow-up failed",
                    extra={"context": {"tenant_id": followup.tenant_id, "phone": followup.phone_number}},
                )
        return delivered

    async def _run_followup(self, followup: FollowUp) -> bool:
        tenant = self.tenants.get_by_channel(followup.channel_id)
        if tenant is None or tenant.tenant_id != followup.tenant_id:
            logger.info(
                "Follow-up tenant no longer active",
                extra={"context": {"tenant_id": followup.tenant_id, "channel_id": followup.channel_id}},
            )
            return False

        async with self.locks.hold(tenant.tenant_id, followup.phone_number):
            session = await self.sessions.get(tenant.tenant_id, followup.phone_number)
            result: Transition = await self.engine.run_followup(session, followup, tenant)
            if not result.messages:
                return False
            if result.clear_session:
                await self.sessions.delete(tenant.tenant_id, followup.phone_number)
            else:
                await self.sessions.save(session)
            await self._deliver(tenant, followup.phone_number, result.messages)
        return True

    async def evict_stale_sessions(self, idle_minutes: float) -> int:
        cutoff = self.clock() - timedelta(minutes=idle_minutes)
        removed = await self.sessions.evict(cutoff)
        if removed:
            logger.info(f"Evicted {removed} idle sessions", extra={"context": {"cutoff": cutoff.isoformat()}})
        return removed
