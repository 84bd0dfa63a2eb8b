"""Citizen conversation flow: language choice, main menu, OTP gate and grievance intake.

``ConversationEngine.handle`` mutates the session in place and returns a ``Transition``
describing what to send, whether the session should be cleared, and which follow-ups to
schedule. Persisting the session and delivering messages is left to the caller.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from citizen_api.constants import SUPPORTED_LANGUAGES, Module
from citizen_api.logging_config import get_logger
from citizen_api.services.category_router import DEFAULT_CATEGORIES, FALLBACK_CATEGORY, CategoryRouter, normalize_label
from citizen_api.services.followup_service import FollowUp, FollowUpKind
from citizen_api.services.grievance_service import GrievanceFinalizer
from citizen_api.services.intents import (
    CATEGORY_OPTION_PREFIX,
    LANGUAGE_OPTION_PREFIX,
    MENU_APPOINTMENT,
    MENU_GRIEVANCE,
    MENU_TRACK,
    InboundEvent,
    InboundIntent,
    IntentKind,
)
from citizen_api.services.message_catalog import MessageCatalog
from citizen_api.services.otp_service import OtpVerifier
from citizen_api.services.outbound import Option, OutboundMessage
from citizen_api.services.session_store import Session
from citizen_api.services.state_machine import ConversationStep, transition
from citizen_api.services.tenant_directory import TenantConfig

logger = get_logger("conversation_engine")

PENDING_GRIEVANCE = "grievance"
MAX_CATEGORY_CHOICES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Transition:
    messages: list[OutboundMessage] = field(default_factory=list)
    clear_session: bool = False
    followups: list[FollowUp] = field(default_factory=list)

    def say(self, message: OutboundMessage) -> "Transition":
        self.messages.append(message)
        return self


class ConversationEngine:
    def __init__(
        self,
        otp: OtpVerifier,
        router: CategoryRouter,
        finalizer: GrievanceFinalizer,
        catalog: Optional[MessageCatalog] = None,
        followup_delay_seconds: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.otp = otp
        self.router = router
        self.finalizer = finalizer
        self.catalog = catalog or MessageCatalog()
        self.followup_delay_seconds = followup_delay_seconds
        self.clock = clock
        self._handlers = {
            ConversationStep.START: self._on_start,
            ConversationStep.LANGUAGE_SELECTION: self._on_language_selection,
            ConversationStep.MAIN_MENU: self._on_main_menu,
            ConversationStep.OTP_VERIFICATION: self._on_otp_verification,
            ConversationStep.GRIEVANCE_NAME: self._on_grievance_name,
            ConversationStep.GRIEVANCE_CATEGORY: self._on_grievance_category,
            ConversationStep.GRIEVANCE_DESCRIPTION: self._on_grievance_description,
            ConversationStep.GRIEVANCE_LOCATION: self._on_grievance_location,
            ConversationStep.GRIEVANCE_PHOTO: self._on_grievance_photo,
        }

    # === ENTRY POINTS ===

    async def handle(
        self,
        session: Session,
        intent: InboundIntent,
        event: InboundEvent,
        tenant: TenantConfig,
    ) -> Transition:
        out = Transition()
        if intent.kind == IntentKind.RESET:
            out.say(self._text(session, "session_reset"))
            out.clear_session = True
            return out

        handler = self._handlers.get(session.step)
        if handler is None:
            logger.warning(f"No handler for step {session.step}, restarting conversation")
            session.reset_flow()
            handler = self._on_start

        await handler(session, intent, event, tenant, out)
        logger.debug(
            "Conversation step handled",
            extra={
                "context": {
                    "tenant_id": tenant.tenant_id,
                    "phone": session.phone_number,
                    "intent": intent.kind.value,
                    "step": session.step.value,
                    "clear": out.clear_session,
                }
            },
        )
        return out

    async def run_followup(self, session: Session, followup: FollowUp, tenant: TenantConfig) -> Transition:
        """Execute a scheduled follow-up against a fresh session."""
        out = Transition()
        if session.step != ConversationStep.START:
            # The citizen already started a new conversation.
            return out
        session.language = followup.language
        if followup.kind == FollowUpKind.MAIN_MENU:
            self._present_main_menu(session, tenant, out)
        return out

    # === RENDERING HELPERS ===

    def _render(self, session: Session, key: str, **values) -> str:
        return self.catalog.render(key, session.language, **values)

    def _text(self, session: Session, key: str, **values) -> OutboundMessage:
        return OutboundMessage.text(self._render(session, key, **values))

    def _advance(self, session: Session, to_step: ConversationStep) -> None:
        if session.step != to_step:
            session.step = transition(session.step, to_step)

    def _language_prompt(self, session: Session, tenant: TenantConfig) -> OutboundMessage:
        options = [
            Option(f"{LANGUAGE_OPTION_PREFIX}{code}", self._render(session, f"language_option_{code}"))
            for code in SUPPORTED_LANGUAGES
        ]
        return OutboundMessage.choices(self._render(session, "language_prompt", tenant_name=tenant.name), options)

    def menu_options(self, session: Session, tenant: TenantConfig) -> list[Option]:
        options = []
        if tenant.has_module(Module.GRIEVANCE):
            options.append(Option(MENU_GRIEVANCE, self._render(session, "menu_grievance")))
        if tenant.has_module(Module.APPOINTMENT):
            options.append(Option(MENU_APPOINTMENT, self._render(session, "menu_appointment")))
        if options:
            options.append(Option(MENU_TRACK, self._render(session, "menu_track")))
        return options

    def _present_main_menu(self, session: Session, tenant: TenantConfig, out: Transition) -> None:
        options = self.menu_options(session, tenant)
        if not options:
            out.say(self._text(session, "no_services"))
            out.clear_session = True
            return
        self._advance(session, ConversationStep.MAIN_MENU)
        out.say(OutboundMessage.choices(self._render(session, "main_menu"), options))

    def _categories(self, tenant: TenantConfig) -> list[str]:
        try:
            categories = self.router.available_categories(tenant)
        except Exception as e:
            logger.warning(f"Category lookup failed, using defaults: {e}")
            categories = []
        return categories or list(DEFAULT_CATEGORIES)

    def _start_grievance(self, session: Session, out: Transition) -> None:
        session.draft = {}
        session.pending_action = None
        self._advance(session, ConversationStep.GRIEVANCE_NAME)
        out.say(self._text(session, "grievance_start"))

    # === STEP HANDLERS ===

    async def _on_start(self, session, intent, event, tenant, out: Transition) -> None:
        if not tenant.enabled_modules:
            logger.info(
                "Tenant has no enabled modules",
                extra={"context": {"tenant_id": tenant.tenant_id, "phone": session.phone_number}},
            )
            out.say(self._text(session, "service_unavailable"))
            out.clear_session = True
            return
        self._advance(session, ConversationStep.LANGUAGE_SELECTION)
        out.say(self._language_prompt(session, tenant))

    async def _on_language_selection(self, session, intent, event, tenant, out: Transition) -> None:
        language = None
        if intent.kind == IntentKind.LANGUAGE_CHOICE and intent.value in SUPPORTED_LANGUAGES:
            language = intent.value
        elif intent.kind == IntentKind.NUMBERED_CHOICE:
            index = int(intent.value) - 1
            if 0 <= index < len(SUPPORTED_LANGUAGES):
                language = SUPPORTED_LANGUAGES[index]

        if language is None:
            out.say(self._language_prompt(session, tenant))
            return

        session.language = language
        self._present_main_menu(session, tenant, out)

    async def _on_main_menu(self, session, intent, event, tenant, out: Transition) -> None:
        options = self.menu_options(session, tenant)
        if intent.kind == IntentKind.GREETING:
            self._present_main_menu(session, tenant, out)
            return

        choice = None
        if intent.kind == IntentKind.MENU_CHOICE:
            choice = intent.value
        elif intent.kind == IntentKind.NUMBERED_CHOICE:
            index = int(intent.value) - 1
            if 0 <= index < len(options):
                choice = options[index].id

        if choice == MENU_GRIEVANCE:
            if not tenant.has_module(Module.GRIEVANCE):
                out.say(self._text(session, "grievance_disabled"))
                self._present_main_menu(session, tenant, out)
                return
            if await self.otp.is_verified(tenant.tenant_id, session.phone_number):
                self._start_grievance(session, out)
                return
            code = await self.otp.issue(tenant.tenant_id, session.phone_number)
            session.pending_action = PENDING_GRIEVANCE
            self._advance(session, ConversationStep.OTP_VERIFICATION)
            minutes = max(1, math.ceil(self.otp.ttl_seconds / 60))
            out.say(self._text(session, "otp_sent", code=code, minutes=minutes))
            out.say(self._text(session, "otp_prompt", length=self.otp.length))
            return

        if choice == MENU_APPOINTMENT:
            if not tenant.has_module(Module.APPOINTMENT):
                out.say(self._text(session, "appointment_disabled"))
                self._present_main_menu(session, tenant, out)
                return
            out.say(self._text(session, "appointment_coming_soon"))
            return

        if choice == MENU_TRACK:
            out.say(self._text(session, "track_coming_soon"))
            return

        out.say(self._text(session, "invalid_option"))
        self._present_main_menu(session, tenant, out)

    async def _on_otp_verification(self, session, intent, event, tenant, out: Transition) -> None:
        candidate = intent.value if intent.kind == IntentKind.OTP_CODE else (event.text or "").strip()
        verified = False
        if candidate:
            verified = await self.otp.check(tenant.tenant_id, session.phone_number, candidate)

        if verified:
            out.say(self._text(session, "otp_verified"))
            if session.pending_action == PENDING_GRIEVANCE:
                self._start_grievance(session, out)
            else:
                session.pending_action = None
                self._present_main_menu(session, tenant, out)
            return

        if await self.otp.has_live_code(tenant.tenant_id, session.phone_number):
            out.say(self._text(session, "otp_invalid"))
            return

        out.say(self._text(session, "otp_expired"))
        session.pending_action = None
        self._present_main_menu(session, tenant, out)

    async def _on_grievance_name(self, session, intent, event, tenant, out: Transition) -> None:
        name = (event.text or "").strip()
        if not name:
            out.say(self._text(session, "grievance_start"))
            return

        session.draft["citizen_name"] = name
        offered = self._categories(tenant)[:MAX_CATEGORY_CHOICES]
        options = [Option(f"{CATEGORY_OPTION_PREFIX}{label}", label.capitalize()) for label in offered]
        self._advance(session, ConversationStep.GRIEVANCE_CATEGORY)
        out.say(OutboundMessage.choices(self._render(session, "category_prompt"), options))

    async def _on_grievance_category(self, session, intent, event, tenant, out: Transition) -> None:
        categories = self._categories(tenant)
        category = None
        if intent.kind == IntentKind.CATEGORY_CHOICE:
            category = normalize_label(intent.value)
        elif intent.kind == IntentKind.NUMBERED_CHOICE:
            index = int(intent.value) - 1
            if 0 <= index < min(len(categories), MAX_CATEGORY_CHOICES):
                category = categories[index]
        elif intent.kind == IntentKind.FREE_TEXT:
            typed = normalize_label(intent.value)
            if typed in categories:
                category = typed

        session.draft["category"] = category or FALLBACK_CATEGORY
        self._advance(session, ConversationStep.GRIEVANCE_DESCRIPTION)
        out.say(self._text(session, "description_prompt"))

    async def _on_grievance_description(self, session, intent, event, tenant, out: Transition) -> None:
        description = (event.text or "").strip()
        if not description:
            out.say(self._text(session, "description_prompt"))
            return

        session.draft["description"] = description
        self._advance(session, ConversationStep.GRIEVANCE_LOCATION)
        out.say(self._text(session, "location_prompt"))

    async def _on_grievance_location(self, session, intent, event, tenant, out: Transition) -> None:
        if intent.kind == IntentKind.LOCATION:
            if event.latitude is not None and event.longitude is not None:
                session.draft["location"] = {"latitude": event.latitude, "longitude": event.longitude}
                session.draft["address"] = event.address or f"{event.latitude}, {event.longitude}"
            elif event.address:
                session.draft["address"] = event.address
        elif intent.kind not in (IntentKind.SKIP, IntentKind.MEDIA, IntentKind.EMPTY):
            address = (event.text or "").strip()
            if address:
                session.draft["address"] = address

        self._advance(session, ConversationStep.GRIEVANCE_PHOTO)
        out.say(self._text(session, "photo_prompt"))

    async def _on_grievance_photo(self, session, intent, event, tenant, out: Transition) -> None:
        if intent.kind == IntentKind.MEDIA and event.media_id:
            session.draft.setdefault("media", []).append(
                {
                    "id": event.media_id,
                    "type": event.media_type,
                    "caption": event.caption,
                    "uploaded_at": self.clock().isoformat(),
                }
            )

        try:
            result = self.finalizer.finalize(tenant, session)
        except Exception:
            logger.exception(
                "Grievance finalization crashed",
                extra={"context": {"tenant_id": tenant.tenant_id, "phone": session.phone_number}},
            )
            result = None

        out.clear_session = True
        if result is None or not result.ok:
            out.say(self._text(session, "grievance_failure"))
            return

        finalized = result.value
        department_key = "department_assigned" if finalized.department_id else "department_pending"
        out.say(
            self._text(
                session,
                "grievance_success",
                grievance_id=finalized.grievance_id,
                category=finalized.category,
                department=self._render(session, department_key),
            )
        )
        out.followups.append(
            FollowUp(
                tenant_id=tenant.tenant_id,
                channel_id=event.channel_id,
                phone_number=session.phone_number,
                language=session.language,
                kind=FollowUpKind.MAIN_MENU,
                due_at=self.clock() + timedelta(seconds=self.followup_delay_seconds),
            )
        )
