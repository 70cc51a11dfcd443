"""Shared fixtures for crmflow tests."""

import random
from datetime import datetime, timezone

import pytest

import crmflow.contacts as contacts_module
import crmflow.persistence as persistence
from crmflow.config import EngineConfig
from crmflow.contacts import InMemoryContactStore
from crmflow.engine import WorkflowEngine
from crmflow.messaging import InMemoryMessageSender
from crmflow.models import Workflow
from crmflow.persistence import InMemoryWorkflowRepository

# A Monday afternoon in UTC
T0 = datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)

CONTACT = {
    "id": "c-1",
    "workspace_id": "ws-1",
    "first_name": "Dana",
    "last_name": "Reyes",
    "email": "dana@example.com",
    "phone": "+15125550100",
    "type": "buyer",
    "status": "lead",
    "assigned_to": "agent-7",
    "tags": ["new-lead"],
    "custom_fields": {"budget": 650000, "property_type": "condo"},
}


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.setattr(contacts_module, "_store_instance", None)
    for name in (
        "CRMFLOW_DATABASE_URL",
        "DATABASE_URL",
        "CRON_SECRET",
        "CRMFLOW_ENV",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CRMFLOW_CONFIG", str(tmp_path / "missing-config.yaml"))


@pytest.fixture
def now():
    return T0


@pytest.fixture
def contact_data():
    return {**CONTACT, "tags": list(CONTACT["tags"]), "custom_fields": dict(CONTACT["custom_fields"])}


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def contacts():
    return InMemoryContactStore()


@pytest.fixture
def sender():
    return InMemoryMessageSender()


@pytest.fixture
def engine_config():
    return EngineConfig(retry_jitter=0)


@pytest.fixture
def engine(repository, contacts, sender, engine_config, now):
    return WorkflowEngine(
        repository,
        contacts,
        sender,
        config=engine_config,
        rng=random.Random(7),
        clock=lambda: now,
    )


@pytest.fixture
def make_workflow():
    """Build an active manual-trigger workflow from a list of step dicts."""

    def build(steps, **overrides) -> Workflow:
        data = {
            "workspace_id": "ws-1",
            "name": "Test workflow",
            "status": "active",
            "trigger": {"type": "manual"},
            "steps": steps,
        }
        data.update(overrides)
        return Workflow.model_validate(data)

    return build
