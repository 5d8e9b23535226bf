"""Example deploying a built-in template against a REST lead store."""

import asyncio
import os

from leadflow import build_engine, get_repository
from leadflow.config import load_config
from leadflow.templates import TEMPLATES


async def main():
    # leadflow.yaml (or LEADFLOW_CONFIG) points leads.base_url at the CRM API
    # and database_url at a persistent store.
    config = load_config()
    engine = build_engine(config=config, repository=get_repository(config=config))

    owner = os.getenv("LEADFLOW_OWNER", "user-1")
    for key, template in TEMPLATES.items():
        print(f"🧩 {key}: {template.email_count} emails over {template.total_days} days")

    workflow = await engine.authoring.deploy_template("cold-lead-revival", owner)
    enrollments = await engine.enroller.activate_workflow(workflow.id)
    print(f"✅ Deployed {workflow.name} ({workflow.id})")
    print(f"👥 Enrolled: {[e.lead_id for e in enrollments]}")


if __name__ == "__main__":
    asyncio.run(main())
