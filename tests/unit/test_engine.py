"""Tests for the step executor and the enrollment state machine."""

import asyncio
from datetime import timedelta

import pytest

from crmflow.engine import WorkflowEngine
from crmflow.errors import (
    EnrollmentNotFound,
    EnrollmentRejected,
    TransientExecutionFailure,
    WorkflowNotFound,
)
from crmflow.messaging import InMemoryMessageSender, SendResult

EMAIL = {"action": "send_email", "subject": "Hi {{first_name}}", "content_html": "<p>Welcome</p>"}


async def _start(engine, repository, contacts, workflow, contact, now):
    await repository.save_workflow(workflow)
    await contacts.save_contact(contact)
    return await engine.enroll(workflow.id, contact["id"], now=now)


class FlakySender(InMemoryMessageSender):
    """Raise a transient error for the first ``failures`` sends."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def send(self, channel, target, content):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TransientExecutionFailure("provider timed out")
        return await super().send(channel, target, content)


class SlowSender(InMemoryMessageSender):
    async def send(self, channel, target, content):
        await asyncio.sleep(0.01)
        return await super().send(channel, target, content)


class RejectingSender(InMemoryMessageSender):
    async def send(self, channel, target, content):
        return SendResult(success=False, error="mailbox does not exist")


# ----------------------------------------------------------------------
# Enrollment


@pytest.mark.asyncio
async def test_enroll_starts_at_entry_step(engine, repository, contacts, make_workflow, contact_data, now):
    wf = make_workflow([{"id": "first", "kind": "action", "config": EMAIL}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    assert enrollment.status == "active"
    assert enrollment.current_step_id == "first"
    assert enrollment.next_step_at == now
    assert enrollment.workspace_id == "ws-1"
    assert (await repository.get_workflow(wf.id)).enrolled_count == 1


@pytest.mark.asyncio
async def test_enroll_rejects_missing_or_inactive_workflow(engine, repository, make_workflow):
    with pytest.raises(WorkflowNotFound):
        await engine.enroll("missing", "c-1")

    draft = make_workflow([{"id": "end", "kind": "end"}], status="draft")
    await repository.save_workflow(draft)
    with pytest.raises(EnrollmentRejected, match="not active"):
        await engine.enroll(draft.id, "c-1")


@pytest.mark.asyncio
async def test_enroll_rejects_workflow_without_steps(engine, repository, make_workflow):
    wf = make_workflow([])
    await repository.save_workflow(wf)
    with pytest.raises(EnrollmentRejected, match="no steps"):
        await engine.enroll(wf.id, "c-1")


@pytest.mark.asyncio
async def test_contact_cannot_be_enrolled_twice(engine, repository, contacts, make_workflow, contact_data, now):
    wf = make_workflow([{"id": "end", "kind": "end"}])
    await _start(engine, repository, contacts, wf, contact_data, now)

    with pytest.raises(EnrollmentRejected, match="already enrolled"):
        await engine.enroll(wf.id, "c-1", now=now)
    assert len(await repository.list_enrollments(wf.id)) == 1
    assert (await repository.get_workflow(wf.id)).enrolled_count == 1


@pytest.mark.asyncio
async def test_re_enrollment_and_limit(engine, repository, contacts, make_workflow, contact_data, now):
    wf = make_workflow(
        [{"id": "end", "kind": "end"}],
        settings={"allow_re_enrollment": True, "enrollment_limit": 2},
    )
    await _start(engine, repository, contacts, wf, contact_data, now)
    await engine.enroll(wf.id, "c-1", now=now)

    with pytest.raises(EnrollmentRejected, match="enrollment limit of 2"):
        await engine.enroll(wf.id, "c-1", now=now)


@pytest.mark.asyncio
async def test_manual_exit(engine, repository, contacts, make_workflow, contact_data, now):
    wf = make_workflow([{"id": "end", "kind": "end"}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    assert await engine.exit_enrollment(enrollment.id, "Unsubscribed", now=now) is True
    assert await engine.exit_enrollment(enrollment.id, now=now) is False
    stored = await repository.get_enrollment(enrollment.id)
    assert stored.status == "exited"
    assert stored.exit_reason == "Unsubscribed"
    assert stored.next_step_at is None

    with pytest.raises(EnrollmentNotFound):
        await engine.exit_enrollment("missing")


# ----------------------------------------------------------------------
# Step execution


@pytest.mark.asyncio
async def test_wait_parks_enrollment_until_due(engine, repository, contacts, make_workflow, contact_data, now):
    wf = make_workflow(
        [
            {"id": "wait", "kind": "wait", "next_step_id": "end", "config": {"duration": 1, "unit": "hours"}},
            {"id": "end", "kind": "end"},
        ]
    )
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    result = await engine.process_step(enrollment.id, now)
    assert result.outcome == "advanced"
    assert result.enrollment.status == "active"
    assert result.enrollment.current_step_id == "end"
    assert result.enrollment.next_step_at == now + timedelta(hours=1)

    # not due yet
    early = await engine.process_step(enrollment.id, now + timedelta(minutes=30))
    assert early.outcome == "skipped"

    done = await engine.process_step(enrollment.id, now + timedelta(hours=1))
    assert done.outcome == "completed"
    stored = await repository.get_enrollment(enrollment.id)
    assert stored.status == "completed"
    assert stored.completed_at == now + timedelta(hours=1)
    assert stored.next_step_at is None
    assert (await repository.get_workflow(wf.id)).completed_count == 1


def _branching_steps():
    return [
        {
            "id": "is-buyer",
            "kind": "condition",
            "config": {
                "conditions": [{"field": "type", "operator": "equals", "value": "buyer"}],
                "true_step_id": "tag-hot",
                "false_step_id": "tag-cold",
            },
        },
        {"id": "tag-hot", "kind": "action", "next_step_id": "end", "config": {"action": "add_tag", "tag_ids": ["hot"]}},
        {"id": "tag-cold", "kind": "action", "next_step_id": "end", "config": {"action": "add_tag", "tag_ids": ["cold"]}},
        {"id": "end", "kind": "end"},
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("contact_type,branch,tag", [("buyer", "true", "hot"), ("seller", "false", "cold")])
async def test_condition_chooses_branch(
    engine, repository, contacts, make_workflow, contact_data, now, contact_type, branch, tag
):
    contact_data["type"] = contact_type
    wf = make_workflow(_branching_steps())
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    result = await engine.process_step(enrollment.id, now)

    assert result.outcome == "advanced"
    assert result.steps_executed == 2
    history = result.enrollment.step_history
    assert history[0].step_id == "is-buyer"
    assert history[0].branch_taken == branch
    assert history[1].step_id == f"tag-{tag}"
    assert result.enrollment.current_step_id == "end"
    assert tag in (await contacts.get_contact("c-1"))["tags"]


@pytest.mark.asyncio
async def test_action_ends_the_tick(engine, repository, contacts, sender, make_workflow, contact_data, now):
    wf = make_workflow(
        [
            {"id": "email", "kind": "action", "next_step_id": "sms", "config": EMAIL},
            {"id": "sms", "kind": "action", "config": {"action": "send_sms", "message": "Hi"}},
        ]
    )
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    result = await engine.process_step(enrollment.id, now)
    assert result.outcome == "advanced"
    assert [m.channel for m in sender.outbox] == ["email"]
    assert sender.outbox[0].content["subject"] == "Hi Dana"

    result = await engine.process_step(enrollment.id, now)
    assert result.outcome == "completed"
    assert [m.channel for m in sender.outbox] == ["email", "sms"]


@pytest.mark.asyncio
async def test_go_to_cycle_hits_loop_limit(engine, repository, contacts, make_workflow, contact_data, now):
    wf = make_workflow(
        [
            {"id": "a", "kind": "go_to", "config": {"target_step_id": "b"}},
            {"id": "b", "kind": "go_to", "config": {"target_step_id": "a"}},
        ]
    )
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    result = await engine.process_step(enrollment.id, now)

    assert result.outcome == "failed"
    assert result.steps_executed == engine.config.max_steps_per_tick
    assert "Loop limit of 10" in result.error
    stored = await repository.get_enrollment(enrollment.id)
    assert stored.status == "failed"
    assert stored.next_step_at is None
    assert stored.step_history[-1].status == "failed"
    assert await repository.list_due_enrollments(now + timedelta(days=1), 10) == []


@pytest.mark.asyncio
async def test_missing_contact_fails_without_retry(engine, repository, make_workflow, now):
    wf = make_workflow([{"id": "email", "kind": "action", "config": EMAIL}])
    await repository.save_workflow(wf)
    enrollment = await engine.enroll(wf.id, "ghost", now=now)

    result = await engine.process_step(enrollment.id, now)

    assert result.outcome == "failed"
    assert result.error == "Contact ghost not found"
    stored = await repository.get_enrollment(enrollment.id)
    assert stored.status == "failed"
    assert stored.retry_count == 0
    assert stored.completed_at == now


@pytest.mark.asyncio
async def test_provider_rejection_is_not_retried(repository, contacts, make_workflow, contact_data, now, engine_config):
    engine = WorkflowEngine(repository, contacts, RejectingSender(), config=engine_config)
    wf = make_workflow([{"id": "email", "kind": "action", "config": EMAIL}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    result = await engine.process_step(enrollment.id, now)
    assert result.outcome == "failed"
    assert result.error == "mailbox does not exist"


@pytest.mark.asyncio
async def test_transient_failures_back_off_then_fail(repository, contacts, make_workflow, contact_data, now, engine_config):
    engine = WorkflowEngine(repository, contacts, FlakySender(failures=100), config=engine_config)
    wf = make_workflow([{"id": "email", "kind": "action", "config": EMAIL}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    tick = now
    for attempt, delay in enumerate([60, 120, 240], start=1):
        result = await engine.process_step(enrollment.id, tick)
        assert result.outcome == "retry_scheduled"
        assert result.enrollment.retry_count == attempt
        assert result.enrollment.last_error == "provider timed out"
        assert result.enrollment.next_step_at == tick + timedelta(seconds=delay)
        assert result.enrollment.current_step_id == "email"
        tick = result.enrollment.next_step_at

    result = await engine.process_step(enrollment.id, tick)
    assert result.outcome == "failed"
    stored = await repository.get_enrollment(enrollment.id)
    assert stored.status == "failed"
    assert stored.next_step_at is None
    assert "Retries exhausted after 3 attempts" in stored.last_error
    assert [r.status for r in stored.step_history] == ["retrying"] * 3 + ["failed"]
    assert all(r.kind == "action" for r in stored.step_history)


@pytest.mark.asyncio
async def test_retry_success_resets_retry_count(repository, contacts, make_workflow, contact_data, now, engine_config):
    sender = FlakySender(failures=1)
    engine = WorkflowEngine(repository, contacts, sender, config=engine_config)
    wf = make_workflow([{"id": "email", "kind": "action", "config": EMAIL}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    first = await engine.process_step(enrollment.id, now)
    assert first.outcome == "retry_scheduled"

    second = await engine.process_step(enrollment.id, now + timedelta(seconds=60))
    assert second.outcome == "completed"
    assert second.enrollment.retry_count == 0
    assert second.enrollment.last_error is None
    assert len(sender.outbox) == 1


class FailOnceForSender(InMemoryMessageSender):
    """Time out the first send to ``target`` only."""

    def __init__(self, target):
        super().__init__()
        self.target = target
        self.failed = False

    async def send(self, channel, target, content):
        if target == self.target and not self.failed:
            self.failed = True
            raise TransientExecutionFailure("provider timed out")
        return await super().send(channel, target, content)


@pytest.mark.asyncio
async def test_notification_retry_does_not_resend_to_delivered_recipients(
    repository, contacts, make_workflow, contact_data, now, engine_config
):
    sender = FailOnceForSender("b@x.com")
    engine = WorkflowEngine(repository, contacts, sender, config=engine_config)
    notify = {
        "action": "send_notification",
        "channel": "email",
        "recipients": ["a@x.com", "b@x.com"],
        "subject": "New lead",
        "message": "{{first_name}} signed up",
    }
    wf = make_workflow([{"id": "notify", "kind": "action", "config": notify}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    first = await engine.process_step(enrollment.id, now)
    assert first.outcome == "retry_scheduled"
    assert first.enrollment.step_history[-1].result["delivered"] == ["a@x.com"]

    second = await engine.process_step(enrollment.id, now + timedelta(seconds=60))
    assert second.outcome == "completed"
    assert [m.target for m in sender.outbox] == ["a@x.com", "b@x.com"]
    assert [r.status for r in second.enrollment.step_history] == ["retrying", "completed"]
    record = second.enrollment.step_history[-1]
    assert record.result["recipients"] == ["a@x.com", "b@x.com"]
    assert len(record.result["notification_ids"]) == 2


@pytest.mark.asyncio
async def test_missing_phone_skips_sms(engine, repository, contacts, sender, make_workflow, contact_data, now):
    contact_data["phone"] = None
    wf = make_workflow(
        [
            {"id": "sms", "kind": "action", "next_step_id": "end", "config": {"action": "send_sms", "message": "Hi"}},
            {"id": "end", "kind": "end"},
        ]
    )
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    result = await engine.process_step(enrollment.id, now)

    assert result.outcome == "advanced"
    assert result.enrollment.current_step_id == "end"
    record = result.enrollment.step_history[0]
    assert record.status == "skipped"
    assert record.error == "Contact does not have a phone number"
    assert sender.outbox == []


@pytest.mark.asyncio
async def test_split_follows_chosen_variant(engine, repository, contacts, make_workflow, contact_data, now):
    wf = make_workflow(
        [
            {
                "id": "split",
                "kind": "split",
                "config": {
                    "split_type": "percentage",
                    "variants": [
                        {"id": "A", "percentage": 100, "next_step_id": "tag-a"},
                        {"id": "B", "percentage": 0, "next_step_id": "tag-b"},
                    ],
                },
            },
            {"id": "tag-a", "kind": "action", "config": {"action": "add_tag", "tag_ids": ["a"]}},
            {"id": "tag-b", "kind": "action", "config": {"action": "add_tag", "tag_ids": ["b"]}},
        ]
    )
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    result = await engine.process_step(enrollment.id, now)

    assert result.enrollment.step_history[0].branch_taken == "A"
    assert result.enrollment.step_history[1].step_id == "tag-a"


# ----------------------------------------------------------------------
# Workflow status and settings


@pytest.mark.asyncio
async def test_paused_workflow_defers(engine, repository, contacts, make_workflow, contact_data, now):
    wf = make_workflow([{"id": "email", "kind": "action", "config": EMAIL}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)
    await repository.save_workflow(wf.model_copy(update={"status": "paused"}))

    result = await engine.process_step(enrollment.id, now)

    assert result.outcome == "deferred"
    assert result.enrollment.status == "active"
    assert result.enrollment.step_history == []
    assert result.enrollment.next_step_at == now + timedelta(seconds=300)


@pytest.mark.asyncio
async def test_archived_workflow_exits(engine, repository, contacts, make_workflow, contact_data, now):
    wf = make_workflow([{"id": "email", "kind": "action", "config": EMAIL}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)
    await repository.save_workflow(wf.model_copy(update={"status": "archived"}))

    result = await engine.process_step(enrollment.id, now)

    assert result.outcome == "exited"
    assert result.enrollment.exit_reason == "Workflow is archived"


@pytest.mark.asyncio
async def test_exit_condition_stops_enrollment(engine, repository, contacts, sender, make_workflow, contact_data, now):
    contact_data["status"] = "customer"
    wf = make_workflow(
        [{"id": "email", "kind": "action", "config": EMAIL}],
        settings={"exit_conditions": [{"field": "status", "operator": "equals", "value": "customer"}]},
    )
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    result = await engine.process_step(enrollment.id, now)

    assert result.outcome == "exited"
    assert result.enrollment.exit_reason == "Exit condition met"
    assert sender.outbox == []


@pytest.mark.asyncio
async def test_action_outside_working_hours_is_deferred(
    engine, repository, contacts, sender, make_workflow, contact_data, now
):
    wf = make_workflow(
        [{"id": "email", "kind": "action", "config": EMAIL}],
        settings={"working_hours_only": True},
    )
    evening = now + timedelta(hours=3)  # Monday 18:00 UTC
    enrollment = await _start(engine, repository, contacts, wf, contact_data, evening)

    result = await engine.process_step(enrollment.id, evening)

    assert result.outcome == "deferred"
    assert result.enrollment.current_step_id == "email"
    assert result.enrollment.next_step_at == now.replace(hour=9) + timedelta(days=1)
    assert sender.outbox == []


# ----------------------------------------------------------------------
# Claims


@pytest.mark.asyncio
async def test_concurrent_processing_sends_once(repository, contacts, make_workflow, contact_data, now, engine_config):
    sender = SlowSender()
    engine = WorkflowEngine(repository, contacts, sender, config=engine_config)
    wf = make_workflow([{"id": "email", "kind": "action", "next_step_id": "end", "config": EMAIL}, {"id": "end", "kind": "end"}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    results = await asyncio.gather(
        engine.process_step(enrollment.id, now), engine.process_step(enrollment.id, now)
    )

    assert sorted(r.outcome for r in results) == ["advanced", "skipped"]
    assert len(sender.outbox) == 1


@pytest.mark.asyncio
async def test_exit_during_processing_discards_tick(
    repository, contacts, make_workflow, contact_data, now, engine_config
):
    sender = SlowSender()
    engine = WorkflowEngine(repository, contacts, sender, config=engine_config)
    wf = make_workflow([{"id": "email", "kind": "action", "next_step_id": "end", "config": EMAIL}, {"id": "end", "kind": "end"}])
    enrollment = await _start(engine, repository, contacts, wf, contact_data, now)

    async def exit_soon():
        await asyncio.sleep(0)
        return await engine.exit_enrollment(enrollment.id, "Unsubscribed", now=now)

    result, exited = await asyncio.gather(engine.process_step(enrollment.id, now), exit_soon())

    assert exited is True
    assert result.outcome == "skipped"
    assert result.error == "claim lost before write"
    stored = await repository.get_enrollment(enrollment.id)
    assert stored.status == "exited"
    assert stored.current_step_id == "email"
