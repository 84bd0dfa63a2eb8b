import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from citizen_api.constants import AuditAction
from citizen_api.services.message_catalog import MessageCatalog
from citizen_api.services.result import Result
from citizen_api.services.state_machine import ConversationStep
from citizen_api.services.webhook_service import extract_events
from citizen_api.services.whatsapp_service import NOT_CONFIGURED

TENANT = "tenant-1"
PHONE = "919800000001"


@pytest.fixture
def pipe(make_pipeline):
    return make_pipeline()


def _process(pipe, payload):
    return asyncio.run(pipe.processor.process_payload(payload))


def _step(pipe, phone=PHONE):
    return asyncio.run(pipe.sessions.get(TENANT, phone)).step


def _file_grievance(pipe, payloads, through="wamid.9"):
    deliveries = [
        payloads.text("hi", "wamid.1"),
        payloads.button("lang_en", "English", "wamid.2"),
        payloads.button("grievance", "Raise Grievance", "wamid.3"),
        payloads.text("123456", "wamid.4"),
        payloads.text("Asha Patil", "wamid.5"),
        payloads.button("cat_roads", "Roads", "wamid.6"),
        payloads.text("Pothole on the main road", "wamid.7"),
        payloads.text("skip", "wamid.8"),
        payloads.image("MEDIA-9", "wamid.9", caption="pothole"),
    ]
    for payload in deliveries:
        summary = _process(pipe, payload)
        assert summary.processed == 1
        if payload["entry"][0]["changes"][0]["value"]["messages"][0]["id"] == through:
            break


class TestExtractEvents:
    def test_reads_message_and_contact_name(self, payloads):
        events = extract_events(payloads.text("hello", "wamid.1"))

        assert len(events) == 1
        assert events[0].channel_id == "PNID-1"
        assert events[0].sender == PHONE
        assert events[0].contact_name == "Asha"

    def test_status_callbacks_are_ignored(self):
        payload = {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "id": "WABA-1",
                    "changes": [
                        {
                            "field": "messages",
                            "value": {
                                "metadata": {"phone_number_id": "PNID-1"},
                                "statuses": [{"id": "wamid.OUT", "status": "delivered"}],
                            },
                        }
                    ],
                }
            ],
        }
        assert extract_events(payload) == []

    def test_malformed_message_does_not_drop_others(self, payloads):
        payload = payloads.text("hello", "wamid.1")
        messages = payload["entry"][0]["changes"][0]["value"]["messages"]
        messages.insert(0, {"from": PHONE, "type": "text"})

        events = extract_events(payload)

        assert [event.provider_message_id for event in events] == ["wamid.1"]

    def test_change_without_channel_is_skipped(self, payloads):
        payload = payloads.text("hello", "wamid.1")
        payload["entry"][0]["changes"][0]["value"]["metadata"] = {}
        assert extract_events(payload) == []


class TestProcessPayload:
    def test_first_message_gets_language_prompt(self, pipe, payloads):
        summary = _process(pipe, payloads.text("hi", "wamid.1"))

        assert summary.processed == 1
        assert _step(pipe) == ConversationStep.LANGUAGE_SELECTION
        to, message = pipe.gateway.sent[0]
        assert to == PHONE
        assert message.option_ids == ["lang_en", "lang_hi", "lang_mr"]

    def test_inbound_message_is_audited(self, pipe, payloads):
        _process(pipe, payloads.text("hi", "wamid.1"))

        action, resource, resource_id, tenant_id, details = pipe.audit.events[0]
        assert (action, resource, resource_id, tenant_id) == (AuditAction.CREATE, "WhatsAppMessage", "wamid.1", TENANT)
        assert details == {"from": PHONE, "type": "text", "intent": "greeting", "step": "start", "text": "hi"}

    def test_redelivery_is_processed_once(self, pipe, payloads):
        payload = payloads.text("hi", "wamid.1")

        first = _process(pipe, payload)
        second = _process(pipe, payload)

        assert first.processed == 1
        assert second.duplicates == 1
        assert second.processed == 0
        assert len(pipe.gateway.sent) == 1
        assert _step(pipe) == ConversationStep.LANGUAGE_SELECTION

    def test_unknown_channel_is_skipped(self, pipe, payloads):
        summary = _process(pipe, payloads.text("hi", "wamid.1", channel_id="PNID-OTHER"))

        assert summary.skipped == 1
        assert pipe.gateway.sent == []
        assert pipe.audit.events == []

    def test_invalid_payload_never_raises(self, pipe):
        summary = _process(pipe, {"object": "whatsapp_business_account", "entry": "not-a-list"})
        assert summary.received == 0

    def test_concurrent_messages_from_one_citizen_are_serialized(self, pipe, payloads):
        async def run():
            return await asyncio.gather(
                pipe.processor.process_payload(payloads.text("hi", "wamid.1")),
                pipe.processor.process_payload(payloads.text("english", "wamid.2")),
            )

        summaries = asyncio.run(run())

        assert [summary.processed for summary in summaries] == [1, 1]
        assert _step(pipe) == ConversationStep.MAIN_MENU
        assert [message.option_ids[0] for _, message in pipe.gateway.sent] == ["lang_en", "grievance"]

    def test_concurrent_redeliveries_produce_one_reply(self, pipe, payloads):
        payload = payloads.text("hi", "wamid.1")

        async def run():
            return await asyncio.gather(
                pipe.processor.process_payload(payload),
                pipe.processor.process_payload(payload),
            )

        summaries = asyncio.run(run())

        assert sorted((s.processed, s.duplicates) for s in summaries) == [(0, 1), (1, 0)]
        assert len(pipe.gateway.sent) == 1
        assert _step(pipe) == ConversationStep.LANGUAGE_SELECTION

    def test_description_is_stored_verbatim(self, pipe, payloads):
        session = asyncio.run(pipe.sessions.get(TENANT, PHONE))
        session.step = ConversationStep.GRIEVANCE_DESCRIPTION
        session.draft = {"citizen_name": "Asha", "category": "roads"}
        asyncio.run(pipe.sessions.save(session))

        _process(pipe, payloads.text("Streetlight broken near market", "wamid.1"))

        stored = asyncio.run(pipe.sessions.get(TENANT, PHONE))
        assert stored.draft["description"] == "Streetlight broken near market"
        assert stored.step == ConversationStep.GRIEVANCE_LOCATION

    def test_tenant_without_modules_clears_session(self, make_pipeline, tenant_with, payloads):
        pipe = make_pipeline(tenant=tenant_with(modules=()))

        _process(pipe, payloads.text("hi", "wamid.1"))
        _process(pipe, payloads.text("hello", "wamid.2"))

        assert len(pipe.sessions) == 0
        unavailable = MessageCatalog().render("service_unavailable", "en")
        assert [message.body for _, message in pipe.gateway.sent] == [unavailable, unavailable]

    def test_citizens_are_isolated(self, pipe, payloads):
        _process(pipe, payloads.text("hi", "wamid.1"))
        _process(pipe, payloads.text("hi", "wamid.2", sender="919800000002"))
        _process(pipe, payloads.text("english", "wamid.3"))

        assert _step(pipe) == ConversationStep.MAIN_MENU
        assert _step(pipe, "919800000002") == ConversationStep.LANGUAGE_SELECTION


class TestFailureHandling:
    def test_session_read_failure_releases_message_for_redelivery(self, pipe, payloads):
        payload = payloads.text("hi", "wamid.1")
        original_get = pipe.sessions.get
        pipe.sessions.get = AsyncMock(side_effect=RuntimeError("redis down"))

        failed = _process(pipe, payload)

        assert failed.failed == 1
        assert pipe.audit.events == []
        assert pipe.gateway.sent == []

        pipe.sessions.get = original_get
        retried = _process(pipe, payload)

        assert retried.processed == 1
        assert _step(pipe) == ConversationStep.LANGUAGE_SELECTION

    def test_session_save_failure_still_replies_and_keeps_claim(self, pipe, payloads):
        payload = payloads.text("hi", "wamid.1")
        original_save = pipe.sessions.save
        pipe.sessions.save = AsyncMock(side_effect=RuntimeError("redis down"))

        failed = _process(pipe, payload)

        assert failed.failed == 1
        assert pipe.gateway.sent[0][1].option_ids == ["lang_en", "lang_hi", "lang_mr"]

        pipe.sessions.save = original_save
        assert _process(pipe, payload).duplicates == 1
        assert len(pipe.gateway.sent) == 1

    def test_clear_failure_after_filing_does_not_file_twice(self, pipe, payloads):
        _file_grievance(pipe, payloads, through="wamid.8")
        photo = payloads.image("MEDIA-9", "wamid.9", caption="pothole")
        original_delete = pipe.sessions.delete
        pipe.sessions.delete = AsyncMock(side_effect=RuntimeError("redis down"))

        first = _process(pipe, photo)

        assert first.failed == 1
        assert len(pipe.store.records) == 1
        assert "GRV00000001" in pipe.gateway.sent[-1][1].body

        pipe.sessions.delete = original_delete
        second = _process(pipe, photo)

        assert second.duplicates == 1
        assert len(pipe.store.records) == 1

    def test_tenant_lookup_failure_releases_message(self, pipe, payloads):
        payload = payloads.text("hi", "wamid.1")
        tenants = pipe.processor.tenants
        pipe.processor.tenants = Mock()
        pipe.processor.tenants.get_by_channel.side_effect = RuntimeError("db down")

        assert _process(pipe, payload).failed == 1

        pipe.processor.tenants = tenants
        assert _process(pipe, payload).processed == 1

    def test_send_failure_keeps_transition(self, pipe, payloads):
        pipe.gateway.deliver = AsyncMock(return_value=Result.failure("WhatsApp not configured", NOT_CONFIGURED))
        _process(pipe, payloads.text("hi", "wamid.1"))
        _process(pipe, payloads.text("english", "wamid.2"))

        summary = _process(pipe, payloads.button("grievance", "Raise Grievance", "wamid.3"))

        assert summary.processed == 1
        assert _step(pipe) == ConversationStep.OTP_VERIFICATION
        # the OTP prompt is not attempted after the code message comes back not_configured
        assert pipe.gateway.deliver.await_count == 3

    def test_send_crash_is_contained(self, pipe, payloads):
        pipe.gateway.deliver = AsyncMock(side_effect=RuntimeError("socket closed"))

        summary = _process(pipe, payloads.text("hi", "wamid.1"))

        assert summary.processed == 1
        assert _step(pipe) == ConversationStep.LANGUAGE_SELECTION


class TestGrievanceOverWebhook:
    def test_completed_grievance_clears_session_and_schedules_menu(self, pipe, payloads):
        _file_grievance(pipe, payloads)

        record = pipe.store.records[0]
        assert record.category == "roads"
        assert record.department_id == "dept-roads"
        assert record.media[0]["caption"] == "pothole"
        assert len(pipe.sessions) == 0
        assert "GRV00000001" in pipe.gateway.sent[-1][1].body
        assert len(pipe.followups) == 1
        assert [event[1] for event in pipe.audit.events].count("Grievance") == 1

    def test_followup_presents_menu_when_due(self, pipe, payloads):
        _file_grievance(pipe, payloads)
        sent_before = len(pipe.gateway.sent)

        assert asyncio.run(pipe.processor.run_due_followups()) == 0

        pipe.clock.advance(2)
        assert asyncio.run(pipe.processor.run_due_followups()) == 1

        assert len(pipe.gateway.sent) == sent_before + 1
        assert pipe.gateway.sent[-1][1].option_ids == ["grievance", "appointment", "track"]
        assert _step(pipe) == ConversationStep.MAIN_MENU

    def test_followup_skipped_when_citizen_restarted(self, pipe, payloads):
        _file_grievance(pipe, payloads)
        _process(pipe, payloads.text("hi", "wamid.10"))
        sent_before = len(pipe.gateway.sent)

        pipe.clock.advance(5)

        assert asyncio.run(pipe.processor.run_due_followups()) == 0
        assert len(pipe.gateway.sent) == sent_before
        assert _step(pipe) == ConversationStep.LANGUAGE_SELECTION

    def test_followup_dropped_when_tenant_gone(self, make_pipeline, payloads):
        pipe = make_pipeline()
        _file_grievance(pipe, payloads)
        pipe.processor.tenants = Mock()
        pipe.processor.tenants.get_by_channel.return_value = None

        pipe.clock.advance(5)

        assert asyncio.run(pipe.processor.run_due_followups()) == 0
        assert len(pipe.followups) == 0


class TestEviction:
    def test_idle_sessions_are_evicted(self, pipe, payloads):
        _process(pipe, payloads.text("hi", "wamid.1"))
        pipe.clock.now = datetime.now(timezone.utc) + timedelta(hours=1)

        removed = asyncio.run(pipe.processor.evict_stale_sessions(30))

        assert removed == 1
        assert _step(pipe) == ConversationStep.START

    def test_active_sessions_are_kept(self, pipe, payloads):
        _process(pipe, payloads.text("hi", "wamid.1"))
        pipe.clock.now = datetime.now(timezone.utc)

        assert asyncio.run(pipe.processor.evict_stale_sessions(30)) == 0
