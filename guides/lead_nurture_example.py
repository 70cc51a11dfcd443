"""Example showing a contact moving through the lead nurture workflow.

Runs entirely in memory: the workflow from ``lead_nurture.yaml`` is imported,
activated, triggered by a tag event and then advanced by batch runs with a
simulated clock.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import yaml

from crmflow import BatchRunner, TriggerDispatcher, TriggerEvent, WorkflowEngine, WorkflowManager
from crmflow.config import EngineConfig
from crmflow.contacts import InMemoryContactStore
from crmflow.messaging import InMemoryMessageSender
from crmflow.persistence import InMemoryWorkflowRepository


async def main():
    repository = InMemoryWorkflowRepository()
    contacts = InMemoryContactStore()
    sender = InMemoryMessageSender()
    engine = WorkflowEngine(repository, contacts, sender, config=EngineConfig())
    manager = WorkflowManager(repository)

    definition = yaml.safe_load((Path(__file__).parent / "lead_nurture.yaml").read_text())
    workflow = await manager.save(definition)
    await manager.activate(workflow.id)

    await contacts.save_contact(
        {
            "id": "c-1",
            "workspace_id": "ws-demo",
            "first_name": "Dana",
            "last_name": "Reyes",
            "email": "dana@example.com",
            "phone": "+15125550100",
            "type": "buyer",
            "custom_fields": {"budget": 350000, "property_type": "condo"},
        }
    )
    dispatcher = TriggerDispatcher(engine, contacts)
    enrollments = await dispatcher.handle(
        TriggerEvent(
            type="tag_added",
            workspace_id="ws-demo",
            contact_id="c-1",
            data={"tag_ids": ["new-lead"]},
        )
    )
    print(f"Enrolled: {[e.id for e in enrollments]}")

    runner = BatchRunner(engine)
    now = datetime.now(timezone.utc)
    ticks = [
        now,
        now + timedelta(minutes=1),
        now + timedelta(days=2, minutes=2),
        now + timedelta(days=2, minutes=3),
    ]
    for tick in ticks:
        report = await runner.run_batch(now=tick)
        print(f"{tick:%Y-%m-%d %H:%M} processed={report.processed} remaining={report.remaining}")

    for message in sender.outbox:
        print(f"{message.channel} -> {message.target}: {message.content}")

    enrollment = await repository.get_enrollment(enrollments[0].id)
    print(f"Final status: {enrollment.status}")
    for record in enrollment.step_history:
        print(f"- {record.step_id}: {record.status} {record.branch_taken or ''}")


if __name__ == "__main__":
    asyncio.run(main())
