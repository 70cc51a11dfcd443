from datetime import timedelta

import pytest

from crmflow.config import load_config
from crmflow.contracts import Enrollment, StepRecord
from crmflow.models import Workflow
from crmflow.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "wf.db")
    return InMemoryWorkflowRepository()


def _workflow(**overrides) -> Workflow:
    data = {
        "workspace_id": "ws-1",
        "name": "Welcome",
        "status": "active",
        "trigger": {"type": "tag_added", "config": {"tag_ids": ["new"]}},
        "steps": [{"id": "end", "kind": "end"}],
    }
    data.update(overrides)
    return Workflow.model_validate(data)


def _enrollment(now, **overrides) -> Enrollment:
    data = {
        "workflow_id": "wf-1",
        "workspace_id": "ws-1",
        "contact_id": "c-1",
        "current_step_id": "end",
        "next_step_at": now,
        "entered_at": now,
    }
    data.update(overrides)
    return Enrollment(**data)


@pytest.mark.asyncio
async def test_workflow_crud_and_filters(repo):
    tagged = _workflow()
    manual = _workflow(trigger={"type": "manual"}, status="draft", workspace_id="ws-2")
    await repo.save_workflow(tagged)
    await repo.save_workflow(manual)

    loaded = await repo.get_workflow(tagged.id)
    assert loaded.model_dump() == tagged.model_dump()
    assert await repo.get_workflow("missing") is None

    assert [w.id for w in await repo.list_workflows(status="active")] == [tagged.id]
    assert [w.id for w in await repo.list_workflows(trigger_type="manual")] == [manual.id]
    assert [w.id for w in await repo.list_workflows(workspace_id="ws-2")] == [manual.id]
    assert await repo.count_workflows("active") == 1


@pytest.mark.asyncio
async def test_saving_a_workflow_keeps_counters(repo):
    wf = _workflow()
    await repo.save_workflow(wf)
    await repo.increment_counter(wf.id, "enrolled_count")
    await repo.increment_counter(wf.id, "enrolled_count")
    await repo.increment_counter(wf.id, "completed_count")

    await repo.save_workflow(wf.model_copy(update={"name": "Renamed"}))

    stored = await repo.get_workflow(wf.id)
    assert stored.name == "Renamed"
    assert stored.enrolled_count == 2
    assert stored.completed_count == 1


@pytest.mark.asyncio
async def test_exclusive_enrollment(repo, now):
    assert await repo.create_enrollment(_enrollment(now)) is True
    assert await repo.create_enrollment(_enrollment(now)) is False
    assert await repo.create_enrollment(_enrollment(now), exclusive=False) is True
    assert await repo.create_enrollment(_enrollment(now, contact_id="c-2")) is True
    assert len(await repo.list_enrollments(contact_id="c-1")) == 2


@pytest.mark.asyncio
async def test_due_enrollments_are_ordered_and_filtered(repo, now):
    late = _enrollment(now, contact_id="late", next_step_at=now - timedelta(minutes=1))
    early = _enrollment(now, contact_id="early", next_step_at=now - timedelta(hours=1))
    future = _enrollment(now, contact_id="future", next_step_at=now + timedelta(minutes=1))
    done = _enrollment(now, contact_id="done", status="completed", next_step_at=None)
    other = _enrollment(now, contact_id="other", workspace_id="ws-2")
    for e in (late, early, future, done, other):
        await repo.create_enrollment(e)

    due = await repo.list_due_enrollments(now, 10)
    assert [e.contact_id for e in due] == ["early", "late", "other"]
    assert [e.contact_id for e in await repo.list_due_enrollments(now, 1)] == ["early"]
    assert [e.contact_id for e in await repo.list_due_enrollments(now, 10, "ws-2")] == ["other"]

    assert await repo.count_enrollments("active") == 4
    assert await repo.count_enrollments("active", due_before=now) == 3


@pytest.mark.asyncio
async def test_claim_is_exclusive_until_lease_expires(repo, now):
    e = _enrollment(now)
    await repo.create_enrollment(e)
    lease = now + timedelta(minutes=5)

    claimed = await repo.claim_enrollment(e.id, "t1", now, lease)
    assert claimed is not None
    assert claimed.claim_token == "t1"
    assert await repo.claim_enrollment(e.id, "t2", now, lease) is None

    # a lease that has run out can be taken over
    after = lease + timedelta(seconds=1)
    taken = await repo.claim_enrollment(e.id, "t2", after, after + timedelta(minutes=5))
    assert taken.claim_token == "t2"


@pytest.mark.asyncio
async def test_claim_requires_active_and_due(repo, now):
    future = _enrollment(now, next_step_at=now + timedelta(hours=1))
    await repo.create_enrollment(future)
    assert await repo.claim_enrollment(future.id, "t", now, now + timedelta(minutes=5)) is None
    assert await repo.claim_enrollment("missing", "t", now, now + timedelta(minutes=5)) is None


@pytest.mark.asyncio
async def test_release_writes_state_only_for_the_holder(repo, now):
    e = _enrollment(now)
    await repo.create_enrollment(e)
    claimed = await repo.claim_enrollment(e.id, "t1", now, now + timedelta(minutes=5))

    claimed.step_history.append(StepRecord(step_id="end", kind="end", started_at=now))
    claimed.status = "completed"
    claimed.next_step_at = None
    claimed.completed_at = now

    assert await repo.release_enrollment(claimed, "wrong-token") is False
    assert await repo.release_enrollment(claimed, "t1") is True

    stored = await repo.get_enrollment(e.id)
    assert stored.status == "completed"
    assert stored.next_step_at is None
    assert stored.claim_token is None
    assert stored.claimed_until is None
    assert [r.step_id for r in stored.step_history] == ["end"]

    # terminal enrollments are never written again
    assert await repo.release_enrollment(claimed, "t1") is False


@pytest.mark.asyncio
async def test_exit_enrollment_invalidates_claim(repo, now):
    e = _enrollment(now)
    await repo.create_enrollment(e)
    claimed = await repo.claim_enrollment(e.id, "t1", now, now + timedelta(minutes=5))

    assert await repo.exit_enrollment(e.id, "Unsubscribed", now) is True
    assert await repo.exit_enrollment(e.id, "Again", now) is False
    assert await repo.release_enrollment(claimed, "t1") is False

    stored = await repo.get_enrollment(e.id)
    assert stored.status == "exited"
    assert stored.exit_reason == "Unsubscribed"
    assert stored.exited_at == now
    assert stored.next_step_at is None
    assert await repo.list_due_enrollments(now, 10) == []


@pytest.mark.asyncio
async def test_sqlite_repository_survives_reopen(tmp_path, now):
    path = tmp_path / "wf.db"
    wf = _workflow()
    first = SQLiteWorkflowRepository(path)
    await first.save_workflow(wf)
    await first.create_enrollment(_enrollment(now, workflow_id=wf.id))

    second = SQLiteWorkflowRepository(path)
    assert (await second.get_workflow(wf.id)).name == "Welcome"
    due = await second.list_due_enrollments(now, 10)
    assert len(due) == 1
    assert due[0].next_step_at == now


def test_get_repository_selects_backend(tmp_path):
    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    # cached until a url or config is passed
    assert get_repository() is get_repository()

    repo = get_repository(f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)

    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")


def test_get_repository_reads_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("CRMFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    repo = get_repository(config=load_config())
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert repo.db_path == str(tmp_path / "env.db")
