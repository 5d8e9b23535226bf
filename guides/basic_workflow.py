"""Simple example showing a workflow built, activated and executed."""

import asyncio
from datetime import timedelta

from leadflow import Step, build_engine
from leadflow.collaborators import InMemoryEmailSender, InMemoryLeadStore
from leadflow.contracts import Lead, SendEmail, StatusEqualsTrigger, Wait, utcnow
from leadflow.persistence import InMemoryWorkflowRepository


async def main():
    """Basic workflow example."""
    leads = InMemoryLeadStore(
        [
            Lead(id="lead-1", owner="user-1", email="hello@bakery.test", business_name="Corner Bakery"),
            Lead(id="lead-2", owner="user-1", email="info@gym.test", business_name="Iron Gym"),
        ]
    )
    sender = InMemoryEmailSender()

    # Drafting uses the configured model (OPENAI_API_KEY for the default)
    engine = build_engine(
        repository=InMemoryWorkflowRepository(), leads=leads, sender=sender
    )

    workflow = await engine.authoring.create_workflow(
        owner="user-1",
        name="Welcome",
        trigger=StatusEqualsTrigger(status="new"),
        steps=[
            Step(order=1, action=SendEmail(email_type="introduction", tone="friendly")),
            Step(order=2, action=Wait(), delay_days=2),
            Step(order=3, action=SendEmail(email_type="value"), delay_days=1),
        ],
    )
    preview = await engine.authoring.preview(workflow.id)
    for entry in preview.timeline:
        print(f"📅 Day {entry.day}: {entry.description}")

    enrollments = await engine.enroller.activate_workflow(workflow.id)
    print(f"✅ Workflow activated, {len(enrollments)} leads enrolled")

    now = utcnow()
    for day in range(4):
        _, summary = await engine.tick(now + timedelta(days=day))
        print(f"🔁 Day {day}: {summary.outcomes}")

    for message in sender.sent:
        print(f"📧 {message.to}: {message.subject}")


if __name__ == "__main__":
    asyncio.run(main())
