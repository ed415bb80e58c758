"""
Tests for the Event System (publish/subscribe)

Tests the dispatcher on its own and the events a workflow run publishes.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

from grc_workflow.events import EventDispatcher, EventPayload, WorkflowEvent
from grc_workflow.service import WorkflowService


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = EventPayload(
            event_type=WorkflowEvent.VOTE_CAST,
            entity_type="vote",
            entity_id="vote-123",
            data={"status": "approved"}
        )

        assert event.event_type == WorkflowEvent.VOTE_CAST
        assert event.entity_type == "vote"
        assert event.data["status"] == "approved"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        original = EventPayload(
            event_type=WorkflowEvent.INSTANCE_STARTED,
            entity_type="workflow_instance",
            entity_id="inst-456",
            data={"resource_id": "R-1"}
        )

        event_dict = original.to_dict()
        assert event_dict["event_type"] == "instance.started"

        restored = EventPayload.from_dict(event_dict)
        assert restored.event_type == original.event_type
        assert restored.entity_id == original.entity_id
        assert restored.timestamp == original.timestamp
        assert restored.event_id == original.event_id


class TestEventDispatcher:
    """Test subscription management and publishing"""

    def test_subscribe_and_publish(self, dispatcher):
        handler = Mock()
        dispatcher.subscribe(WorkflowEvent.STEP_ENTERED, handler)

        event = dispatcher.emit(WorkflowEvent.STEP_ENTERED, "step_execution", "ex-1", {"sequence": 1})
        dispatcher.emit(WorkflowEvent.STEP_SKIPPED, "step_execution", "ex-1")

        handler.assert_called_once_with(event)

    def test_global_handlers_receive_everything(self, dispatcher):
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.emit(WorkflowEvent.TIMER_CREATED, "sla_timer", "t-1")
        dispatcher.emit(WorkflowEvent.TIMER_EXPIRED, "sla_timer", "t-1")

        assert handler.call_count == 2

    def test_unsubscribe(self, dispatcher):
        handler = Mock()
        dispatcher.subscribe(WorkflowEvent.VOTE_CAST, handler)
        dispatcher.subscribe_all(handler)
        assert dispatcher.get_handler_count() == 2
        assert dispatcher.get_handler_count(WorkflowEvent.VOTE_CAST) == 1

        dispatcher.unsubscribe(WorkflowEvent.VOTE_CAST, handler)
        dispatcher.unsubscribe_all(handler)
        dispatcher.emit(WorkflowEvent.VOTE_CAST, "vote", "v-1")

        handler.assert_not_called()
        assert dispatcher.get_handler_count() == 0

    def test_unsubscribing_unknown_handler_is_harmless(self, dispatcher):
        dispatcher.unsubscribe(WorkflowEvent.VOTE_CAST, Mock())
        dispatcher.unsubscribe_all(Mock())

    def test_failing_handler_does_not_stop_others(self, dispatcher):
        failing = Mock(side_effect=RuntimeError("subscriber down"))
        working = Mock()
        dispatcher.subscribe(WorkflowEvent.INSTANCE_FAILED, failing)
        dispatcher.subscribe(WorkflowEvent.INSTANCE_FAILED, working)

        dispatcher.emit(WorkflowEvent.INSTANCE_FAILED, "workflow_instance", "inst-1")

        failing.assert_called_once()
        working.assert_called_once()

    def test_emit_stamps_with_dispatcher_clock(self):
        fixed = datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc)
        dispatcher = EventDispatcher(clock=lambda: fixed)

        event = dispatcher.emit(WorkflowEvent.TIMER_CREATED, "sla_timer", "t-1")
        assert event.timestamp == fixed

    def test_clear(self, dispatcher):
        dispatcher.subscribe(WorkflowEvent.VOTE_CAST, Mock())
        dispatcher.subscribe_all(Mock())
        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0


class TestWorkflowEvents:
    """Events published while running workflows"""

    @pytest.fixture
    def service(self, storage, dispatcher, settings, clock):
        return WorkflowService(storage=storage, dispatcher=dispatcher, settings=settings, clock=clock)

    def test_approval_run_event_sequence(self, service, recorded_events):
        workflow = service.create_workflow("org-1", {
            "name": "Appetite breach sign-off",
            "trigger_type": "appetite_breach",
            "steps": [{"order": 1, "step_type": "approval",
                       "approvers": [{"approver_type": "user", "approver_id": "cro"}]}],
        })
        instance = service.start(workflow.id, "appetite", "A-1")
        execution = service.list_step_executions(instance.id)[0]
        service.cast_vote(execution.id, "cro", "approved")

        assert [e.event_type for e in recorded_events] == [
            WorkflowEvent.WORKFLOW_CREATED,
            WorkflowEvent.INSTANCE_STARTED,
            WorkflowEvent.STEP_ENTERED,
            WorkflowEvent.VOTE_CAST,
            WorkflowEvent.STEP_COMPLETED,
            WorkflowEvent.INSTANCE_COMPLETED,
        ]
        vote_event = recorded_events[3]
        assert vote_event.data["voter_id"] == "cro"
        assert vote_event.data["previous_status"] == "pending"
        assert recorded_events[-1].data["resource_id"] == "A-1"

    def test_event_times_follow_the_engine_clock(self, service, recorded_events, clock):
        started = clock.now
        workflow = service.create_workflow("org-1", {
            "name": "Control attestation",
            "trigger_type": "manual",
            "steps": [{"order": 1, "step_type": "notification"}],
        })
        instance = service.start(workflow.id, "control", "C-1")

        timestamps = [e.timestamp for e in recorded_events]
        assert timestamps == sorted(timestamps)
        assert started <= timestamps[0]
        assert timestamps[-1] < clock.now
        assert instance.started_at < recorded_events[1].timestamp

    def test_failing_subscriber_does_not_break_engine(self, service, dispatcher):
        dispatcher.subscribe(WorkflowEvent.INSTANCE_STARTED, Mock(side_effect=RuntimeError("audit down")))
        workflow = service.create_workflow("org-1", {
            "name": "Notify",
            "trigger_type": "manual",
            "steps": [{"order": 1, "step_type": "notification"}],
        })

        instance = service.start(workflow.id, "risk", "R-1")
        assert service.get_instance(instance.id).current_step_id == workflow.steps[0].id
