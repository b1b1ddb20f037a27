"""Example walking one process instance through its steps.

Set PROCESSCORE_DATABASE_URL (for example ``sqlite:///processcore.db``) to keep
the instance after the script exits.
"""

import asyncio

from processcore import DEFAULT_PROCESS, ExecutionService


async def main():
    service = ExecutionService.from_config()

    started = await service.start_instance(
        DEFAULT_PROCESS.id, variables={"client": "Acme"}, started_by="alice"
    )
    instance_id = started.instance.id
    print(f"Started {instance_id} at {started.instance.current_step_id}")

    await service.assign_step(instance_id, "MKT-FLOW-001-A", "alice", assigned_by="lead")
    await service.assign_step(instance_id, "MKT-FLOW-001-A", "bob", assigned_by="lead")

    for step in DEFAULT_PROCESS.steps[:3]:
        result = await service.complete_step(
            instance_id, step.step_id, completed_by="bob", output={"done": step.name}
        )
        print(f"Completed {step.step_id}, now at {result.instance.current_step_id}")

    page = await service.get_timeline(instance_id, limit=20)
    for entry in reversed(page.timeline):
        print(f"{entry.type:20} {entry.message}")

    await service.drain()
    await service.aclose()


if __name__ == "__main__":
    asyncio.run(main())
