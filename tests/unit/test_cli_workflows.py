import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

import crmflow.contacts as contacts_module
import crmflow.persistence as persistence
from crmflow.cli import app
from crmflow.contacts import InMemoryContactStore
from crmflow.persistence import InMemoryWorkflowRepository

GUIDE = Path(__file__).resolve().parents[2] / "guides" / "lead_nurture.yaml"

runner = CliRunner()


@pytest.fixture
def repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


@pytest.fixture
def store(contact_data) -> InMemoryContactStore:
    store = InMemoryContactStore()
    asyncio.run(store.save_contact({**contact_data, "workspace_id": "ws-demo"}))
    contacts_module._store_instance = store
    return store


def _import_guide(repo) -> str:
    result = runner.invoke(app, ["workflow", "import", str(GUIDE)])
    assert result.exit_code == 0, result.output
    [wf] = asyncio.run(repo.list_workflows())
    return wf.id


def test_workflow_list_empty(repo):
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.output


def test_import_list_and_show(repo):
    workflow_id = _import_guide(repo)

    listed = runner.invoke(app, ["workflow", "list"])
    assert workflow_id in listed.output
    assert "New lead nurture" in listed.output

    shown = runner.invoke(app, ["workflow", "show", workflow_id])
    assert shown.exit_code == 0
    assert "Trigger: tag_added" in shown.output
    assert "check-budget (condition)" in shown.output
    assert "assign-agent, followup-sms" in shown.output

    missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.output


def test_import_reports_definition_errors(repo, tmp_path):
    path = tmp_path / "broken.json"
    path.write_text(
        json.dumps(
            {
                "workspace_id": "ws-1",
                "name": "Broken",
                "steps": [{"id": "a", "kind": "go_to", "config": {"target_step_id": "nowhere"}}],
            }
        )
    )
    result = runner.invoke(app, ["workflow", "import", str(path)])

    assert result.exit_code == 1
    assert "Workflow definition is invalid" in result.output
    assert "references unknown step nowhere" in result.output
    assert asyncio.run(repo.list_workflows()) == []


def test_validate_prints_warnings(tmp_path):
    path = tmp_path / "wf.yaml"
    path.write_text(
        """
workspace_id: ws-1
name: Texts
steps:
  - id: sms
    kind: action
    config:
      action: send_sms
      message: "Hi {{nickname}}"
"""
    )
    result = runner.invoke(app, ["workflow", "validate", str(path)])
    assert result.exit_code == 0
    assert "Warning: Step sms uses unknown token {{nickname}}" in result.output
    assert "Workflow is valid" in result.output

    activation = runner.invoke(app, ["workflow", "validate", str(path), "--activation"])
    assert activation.exit_code == 1
    assert "Workflow must have a trigger configured" in activation.output


def test_status_changes(repo):
    workflow_id = _import_guide(repo)

    result = runner.invoke(app, ["workflow", "status", workflow_id, "active"])
    assert result.exit_code == 0
    assert f"Workflow {workflow_id} is active" in result.output

    bad = runner.invoke(app, ["workflow", "status", workflow_id, "draft"])
    assert bad.exit_code == 1
    assert "Cannot change workflow status from active to draft" in bad.output

    unknown = runner.invoke(app, ["workflow", "status", workflow_id, "deleted"])
    assert unknown.exit_code == 1


def test_enroll_run_and_inspect(repo, store):
    workflow_id = _import_guide(repo)
    runner.invoke(app, ["workflow", "status", workflow_id, "active"])

    enrolled = runner.invoke(app, ["enroll", workflow_id, "c-1", "--data", '{"source": "cli"}'])
    assert enrolled.exit_code == 0, enrolled.output
    assert "created at step welcome" in enrolled.output
    [enrollment] = asyncio.run(repo.list_enrollments(workflow_id))
    assert enrollment.trigger_data == {"source": "cli"}

    again = runner.invoke(app, ["enroll", workflow_id, "c-1"])
    assert again.exit_code == 1
    assert "already enrolled" in again.output

    batch = runner.invoke(app, ["run-batch", "--max-count", "10"])
    assert batch.exit_code == 0
    assert "Processed 1 of 1: 1 succeeded, 0 failed" in batch.output

    listed = runner.invoke(app, ["enrollment", "list", "--workflow", workflow_id])
    assert enrollment.id in listed.output
    assert "wait-2d" in listed.output

    shown = runner.invoke(app, ["enrollment", "show", enrollment.id])
    assert "- welcome (action): completed" in shown.output

    health = runner.invoke(app, ["health"])
    assert "Active enrollments: 1" in health.output
    assert "Active workflows: 1" in health.output

    exited = runner.invoke(app, ["enrollment", "exit", enrollment.id, "--reason", "Opted out"])
    assert f"Enrollment {enrollment.id} exited" in exited.output
    again = runner.invoke(app, ["enrollment", "exit", enrollment.id])
    assert "was not active" in again.output

    missing = runner.invoke(app, ["enrollment", "show", "missing"])
    assert missing.exit_code == 1
    assert "Enrollment not found" in missing.output


def test_enroll_into_inactive_workflow_fails(repo, store):
    workflow_id = _import_guide(repo)
    result = runner.invoke(app, ["enroll", workflow_id, "c-1"])
    assert result.exit_code == 1
    assert "is not active" in result.output
