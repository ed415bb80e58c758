"""
Tests for settings, structured logging and service wiring from settings
"""

import json
import logging
import tempfile
from pathlib import Path

import pytest

from grc_workflow import config
from grc_workflow.config import WorkflowSettings, get_settings, reload_settings
from grc_workflow.logging_config import JSONFormatter, log_action, setup_logging
from grc_workflow.models import InstanceStatus
from grc_workflow.service import WorkflowService
from grc_workflow.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture
def restore_engine_logger():
    """setup_logging replaces handlers and stops propagation; undo that after the test"""
    logger = logging.getLogger("grc_workflow")
    handlers, propagate, level = logger.handlers[:], logger.propagate, logger.level
    yield logger
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = propagate
    logger.setLevel(level)


class TestSettings:

    def test_defaults(self):
        settings = WorkflowSettings(_env_file=None)
        assert settings.database_url == "memory://"
        assert settings.default_sla_hours == 24
        assert settings.display_id_prefix == "WF"
        assert settings.max_conflict_retries == 3
        assert settings.allow_concurrent_instances is True
        assert settings.cancel_instances_on_disable is False
        assert settings.sla_sweep_batch_size == 100

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("GRC_WORKFLOW_DEFAULT_SLA_HOURS", "48")
        monkeypatch.setenv("GRC_WORKFLOW_ALLOW_CONCURRENT_INSTANCES", "false")
        monkeypatch.setenv("GRC_WORKFLOW_DISPLAY_ID_PREFIX", "RSK")

        settings = WorkflowSettings(_env_file=None)
        assert settings.default_sla_hours == 48
        assert settings.allow_concurrent_instances is False
        assert settings.display_id_prefix == "RSK"

    def test_reload_settings(self, monkeypatch):
        original = get_settings()
        try:
            monkeypatch.setenv("GRC_WORKFLOW_LOG_LEVEL", "DEBUG")
            reloaded = reload_settings()
            assert reloaded is get_settings()
            assert reloaded is not original
            assert reloaded.log_level == "DEBUG"
        finally:
            config.settings = original

    def test_display_id_prefix_is_used(self, clock):
        service = WorkflowService(settings=WorkflowSettings(_env_file=None, display_id_prefix="RSK"), clock=clock)
        workflow = service.create_workflow("org-1", {
            "name": "Prefixed",
            "trigger_type": "manual",
            "steps": [{"order": 1, "step_type": "notification"}],
        })
        assert workflow.display_id.startswith("RSK-")


class TestStructuredLogging:

    def test_json_formatter_includes_structured_fields(self):
        logger = logging.getLogger("grc_workflow.test")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "Vote recorded", (), None)
        record.user_id = "alice"
        record.action = "vote_cast"
        record.resource = "step_execution:ex-1"
        record.extra = {"previous_status": "pending"}

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Vote recorded"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "alice"
        assert entry["action"] == "vote_cast"
        assert entry["extra"] == {"previous_status": "pending"}
        assert "correlation_id" not in entry

    def test_log_action_writes_json_to_file(self, restore_engine_logger):
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "engine.log"
            logger = setup_logging("INFO", log_file=str(log_file))

            log_action(logger, "info", "Instance started", user_id="alice",
                       action="instance_started", resource="workflow_instance:i-1")
            log_action(logger, "debug", "Not written")
            for handler in logger.handlers:
                handler.flush()

            lines = log_file.read_text().splitlines()
            assert len(lines) == 1
            entry = json.loads(lines[0])
            assert entry["action"] == "instance_started"
            assert entry["resource"] == "workflow_instance:i-1"
            assert entry["logger"] == "grc_workflow"


class TestServiceFromSettings:

    def test_memory_backend(self, restore_engine_logger):
        service = WorkflowService.from_settings(WorkflowSettings(_env_file=None, log_format="text"))
        assert isinstance(service.storage, InMemoryStorage)
        service.close()

    def test_sqlite_backend_end_to_end(self, restore_engine_logger):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "workflow.db"
            settings = WorkflowSettings(_env_file=None, database_url=f"sqlite:///{db_path}")

            service = WorkflowService.from_settings(settings)
            assert isinstance(service.storage, SQLiteStorage)

            workflow = service.create_workflow("org-1", {
                "name": "Treatment approval",
                "trigger_type": "treatment_submitted",
                "steps": [
                    {"order": 1, "step_type": "approval", "config": {"quorum_rule": "all"},
                     "approvers": [{"approver_type": "user", "approver_id": "alice"},
                                   {"approver_type": "user", "approver_id": "bob"}]},
                    {"order": 2, "step_type": "sla_timer", "config": {"duration_hours": 2}},
                ],
            })
            instance = service.start(workflow.id, "treatment", "T-1")
            approval = service.list_step_executions(instance.id)[0]
            service.cast_vote(approval.id, "alice", "approved")
            service.cast_vote(approval.id, "bob", "approved")
            service.close()

            # Everything is read back from disk by a fresh service
            reopened = WorkflowService.from_settings(settings)
            stored = reopened.get_instance(instance.id)
            assert stored.status == InstanceStatus.RUNNING
            assert stored.current_step_id == workflow.steps[1].id
            assert stored.version == 2
            assert len(reopened.list_timers()) == 1
            reopened.expire_timer(reopened.list_timers()[0].id)
            assert reopened.get_instance(instance.id).status == InstanceStatus.CANCELLED
            reopened.close()
