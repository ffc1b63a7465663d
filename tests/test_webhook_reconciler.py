"""Tests for lifecycle webhook reconciliation.

Covers:
  - Normalizing Retell and Twilio payloads
  - Duplicate delivery leaves the record unchanged
  - The final record does not depend on arrival order
  - A gateway connect racing a webhook yields one record
"""

from __future__ import annotations

import asyncio
import itertools
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from receptionist.db import base_crud
from receptionist.db.crud import create_or_find_conversation, get_conversation_by_call_id
from receptionist.db.models import Conversation, ConversationStatus
from receptionist.models.schemas import RetellWebhookEvent
from receptionist.services.conversation_state import ConversationStore, SessionState
from receptionist.services.webhook_reconciler import (
    WebhookReconciler,
    lifecycle_from_retell,
    lifecycle_from_twilio,
)


# ── Helpers ──────────────────────────────────────────────────────────


def _retell_event(event: str, call_id: str, **call_fields):
    payload = RetellWebhookEvent(event=event, call={"call_id": call_id, "agent_id": "agent_1", **call_fields})
    return lifecycle_from_retell(payload)


def _lifecycle(call_id: str):
    return [
        _retell_event("call_started", call_id, start_timestamp=1_000, to_number="+16195550000"),
        _retell_event(
            "call_ended", call_id,
            start_timestamp=1_000, end_timestamp=61_000,
            disconnection_reason="user_hangup", transcript="Agent: Hi\nUser: Bye",
        ),
        _retell_event(
            "call_analyzed", call_id,
            start_timestamp=1_000, end_timestamp=61_000,
            call_analysis={"call_summary": "Patient booked a cleaning"},
        ),
    ]


def _make_reconciler(session_factory, organization_id):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=organization_id)
    resolver.resolve_or_default = AsyncMock(return_value=organization_id)
    dispatcher = MagicMock()
    dispatcher.schedule = AsyncMock()
    dispatcher.reschedule_deferred = AsyncMock()
    return WebhookReconciler(session_factory, resolver=resolver, dispatcher=dispatcher)


COMPARED_FIELDS = (
    "call_status", "start_timestamp", "end_timestamp", "duration_ms",
    "disconnection_reason", "transcript", "call_analysis", "to_number",
)


# ── TestNormalization ────────────────────────────────────────────────


class TestNormalization:
    def test_retell_web_call_maps_to_web_channel(self):
        event = _retell_event("call_started", "c1", call_type="web_call")

        assert event.channel == "web"
        assert event.status == ConversationStatus.ONGOING

    def test_retell_unknown_event_is_ignored(self):
        payload = RetellWebhookEvent(event="transcript_updated", call={"call_id": "c1"})

        assert lifecycle_from_retell(payload) is None

    def test_twilio_completed_carries_duration(self):
        event = lifecycle_from_twilio({
            "CallSid": "CA1", "CallStatus": "completed", "CallDuration": "42", "To": "+16195550000",
        })

        assert event.status == ConversationStatus.ENDED
        assert event.fields["duration_ms"] == 42_000
        assert event.fields["disconnection_reason"] == "completed"

    def test_twilio_unknown_status_is_ignored(self):
        assert lifecycle_from_twilio({"CallSid": "CA1", "CallStatus": "paused"}) is None


# ── TestReconcile ────────────────────────────────────────────────────


class TestReconcile:
    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_idempotent(self, session_factory, make_organization):
        org_id = make_organization()
        reconciler = _make_reconciler(session_factory, org_id)
        ended = _lifecycle("call_dup")[1]

        first = await reconciler.reconcile(ended)
        second = await reconciler.reconcile(ended)

        assert first == second
        db = session_factory()
        assert db.query(Conversation).filter(Conversation.call_id == "call_dup").count() == 1
        db.close()

    @pytest.mark.asyncio
    async def test_final_record_independent_of_order(self, session_factory, make_organization):
        org_id = make_organization()
        reconciler = _make_reconciler(session_factory, org_id)

        results = []
        for index, order in enumerate(itertools.permutations(range(3))):
            call_id = f"call_order_{index}"
            events = _lifecycle(call_id)
            for position in order:
                record = await reconciler.reconcile(events[position])
            results.append({key: record[key] for key in COMPARED_FIELDS})

        assert all(result == results[0] for result in results)
        assert results[0]["call_status"] == "analyzed"
        assert results[0]["duration_ms"] == 60_000

    @pytest.mark.asyncio
    async def test_status_never_regresses(self, session_factory, make_organization):
        org_id = make_organization()
        reconciler = _make_reconciler(session_factory, org_id)
        started, ended, _ = _lifecycle("call_late")

        await reconciler.reconcile(ended)
        record = await reconciler.reconcile(started)

        assert record["call_status"] == "ended"

    @pytest.mark.asyncio
    async def test_analyzed_schedules_notification(self, session_factory, make_organization):
        org_id = make_organization()
        reconciler = _make_reconciler(session_factory, org_id)
        _, ended, analyzed = _lifecycle("call_notify")

        await reconciler.reconcile(ended)
        reconciler.dispatcher.reschedule_deferred.assert_awaited_once_with("call_notify")

        await reconciler.reconcile(analyzed)
        reconciler.dispatcher.schedule.assert_awaited_once_with("call_notify")

    @pytest.mark.asyncio
    async def test_existing_record_keeps_its_organization(self, session_factory, make_organization):
        owner = make_organization("Owner Dental")
        other = make_organization("Other Dental")
        reconciler = _make_reconciler(session_factory, other)
        db = session_factory()
        create_or_find_conversation(db, {
            "organization_id": owner, "session_id": "call_owned", "call_id": "call_owned", "channel": "retell",
        })
        db.close()

        record = await reconciler.reconcile(_lifecycle("call_owned")[0])

        assert record["organization_id"] == str(owner)
        reconciler.resolver.resolve.assert_not_awaited()


# ── TestConcurrentCreate ─────────────────────────────────────────────


class TestConcurrentCreate:
    def test_losing_insert_reads_the_winner(self, session_factory, make_organization):
        org_id = make_organization()
        db = session_factory()
        winner, created = create_or_find_conversation(db, {
            "organization_id": org_id, "session_id": "CA_race", "call_id": "CA_race", "channel": "twilio",
        })
        assert created
        db.close()

        real_find = base_crud._find_existing
        # The loser checked before the winner committed
        side_effects = iter([None])

        def racing_find(db, session_id, call_id):
            try:
                return next(side_effects)
            except StopIteration:
                return real_find(db, session_id, call_id)

        db = session_factory()
        with patch.object(base_crud, "_find_existing", side_effect=racing_find):
            loser, created = create_or_find_conversation(db, {
                "organization_id": org_id, "session_id": "CA_race", "call_id": "CA_race", "channel": "twilio",
            })
        assert not created
        assert loser.id == winner.id
        db.close()

    @pytest.mark.asyncio
    async def test_gateway_and_webhook_share_one_record(self, session_factory, make_organization):
        org_id = make_organization()
        reconciler = _make_reconciler(session_factory, org_id)
        store = ConversationStore(session_factory)
        state = SessionState(session_id="CA_both", channel="twilio", organization_id=org_id, call_id="CA_both")
        webhook = lifecycle_from_twilio({"CallSid": "CA_both", "CallStatus": "in-progress", "To": "+16195550000"})

        await asyncio.gather(store.bind(state), reconciler.reconcile(webhook))

        db = session_factory()
        assert db.query(Conversation).filter(Conversation.call_id == "CA_both").count() == 1
        assert get_conversation_by_call_id(db, "CA_both").id == state.conversation_id
        db.close()
