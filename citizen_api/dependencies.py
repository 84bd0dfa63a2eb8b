"""Wiring of the webhook pipeline from settings."""

from fastapi import Request

from citizen_api.config import Settings, settings
from citizen_api.logging_config import get_logger
from citizen_api.services.audit_service import AuditSink, LoggingAuditSink, SqlAuditSink
from citizen_api.services.category_router import CategoryRouter
from citizen_api.services.conversation_engine import ConversationEngine
from citizen_api.services.dedup_service import MessageDeduplicator
from citizen_api.services.followup_service import InMemoryFollowUpQueue, RedisFollowUpQueue
from citizen_api.services.grievance_service import GrievanceFinalizer, GrievanceStore, SqlGrievanceStore
from citizen_api.services.message_catalog import MessageCatalog
from citizen_api.services.otp_service import InMemoryOtpStore, OtpVerifier, RedisOtpStore
from citizen_api.services.redis_client import get_redis
from citizen_api.services.session_locks import InMemorySessionLocks, RedisSessionLocks
from citizen_api.services.session_store import InMemorySessionStore, RedisSessionStore
from citizen_api.services.tenant_directory import InMemoryTenantDirectory, SqlTenantDirectory, TenantDirectory
from citizen_api.services.webhook_service import WebhookProcessor
from citizen_api.services.whatsapp_service import WhatsAppGateway

logger = get_logger("dependencies")


def _build_tenant_directory(config: Settings) -> TenantDirectory:
    if config.tenants_file:
        return InMemoryTenantDirectory.from_yaml(config.tenants_file)
    from citizen_api.database import SessionLocal

    return SqlTenantDirectory(SessionLocal)


def _build_storage(config: Settings) -> tuple[GrievanceStore, AuditSink]:
    from citizen_api.database import SessionLocal

    audit_sink = SqlAuditSink(SessionLocal) if config.audit_to_database else LoggingAuditSink()
    return SqlGrievanceStore(SessionLocal), audit_sink


def build_processor(
    config: Settings = settings,
    *,
    tenants: TenantDirectory | None = None,
    grievance_store: GrievanceStore | None = None,
    audit_sink: AuditSink | None = None,
    gateway: WhatsAppGateway | None = None,
) -> WebhookProcessor:
    redis_client = get_redis(config.redis_url, config.redis_socket_timeout)
    idle_seconds = int(config.session_idle_minutes * 60)

    if redis_client is not None:
        sessions = RedisSessionStore(redis_client, idle_seconds)
        locks = RedisSessionLocks(
            redis_client,
            timeout_seconds=config.session_lock_timeout_seconds,
            blocking_timeout_seconds=config.session_lock_blocking_seconds,
        )
        otp_store = RedisOtpStore(redis_client)
        followups = RedisFollowUpQueue(redis_client)
    else:
        logger.warning("REDIS_URL not set, keeping conversation state in process memory")
        sessions = InMemorySessionStore()
        locks = InMemorySessionLocks()
        otp_store = InMemoryOtpStore()
        followups = InMemoryFollowUpQueue()

    if grievance_store is None or audit_sink is None:
        default_store, default_audit = _build_storage(config)
        grievance_store = grievance_store or default_store
        audit_sink = audit_sink or default_audit

    router = CategoryRouter()
    otp = OtpVerifier(
        otp_store,
        length=config.otp_length,
        ttl_seconds=config.otp_ttl_seconds,
        verified_ttl_seconds=config.otp_verified_ttl_seconds,
        max_attempts=config.otp_max_attempts,
    )
    engine = ConversationEngine(
        otp=otp,
        router=router,
        finalizer=GrievanceFinalizer(router, grievance_store, audit_sink),
        catalog=MessageCatalog(),
        followup_delay_seconds=config.followup_delay_seconds,
    )
    return WebhookProcessor(
        tenants=tenants or _build_tenant_directory(config),
        sessions=sessions,
        locks=locks,
        dedup=MessageDeduplicator(redis_client, ttl_seconds=config.dedup_ttl_seconds),
        engine=engine,
        gateway=gateway or WhatsAppGateway(config.whatsapp_api_base_url, config.whatsapp_timeout_seconds),
        followups=followups,
        audit_sink=audit_sink,
        otp_length=config.otp_length,
    )


def get_processor(request: Request) -> WebhookProcessor:
    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        processor = build_processor()
        request.app.state.processor = processor
    return processor
