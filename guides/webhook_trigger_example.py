"""Fire a webhook whenever a step starts.

Run ``python -m http.server 9000`` in another shell, or point the URL at a
request bin, to see the payloads.
"""

import asyncio

from processcore import DEFAULT_PROCESS, ExecutionService, load_config
from processcore.contracts import RetryPolicy, Trigger, TriggerAction


async def main():
    config = load_config()
    config.triggers.append(
        Trigger(
            name="Notify on step start",
            process_id=DEFAULT_PROCESS.id,
            event="step.started",
            actions=[
                TriggerAction(
                    type="webhook",
                    config={
                        "url": "http://localhost:9000/hooks",
                        "payload": {
                            "instance": "{{instance.id}}",
                            "step": "{{step.name}}",
                            "owner": "{{step.owner|default:unassigned}}",
                            "client": "{{vars.client|upper}}",
                        },
                    },
                    retry_policy=RetryPolicy(max_retries=2, initial_delay_ms=500),
                ),
                TriggerAction(type="log", order=1, config={"message": "Notified {{step.id}}"}),
            ],
        )
    )
    service = ExecutionService.from_config(config)

    started = await service.start_instance(DEFAULT_PROCESS.id, variables={"client": "Acme"})
    await service.complete_step(started.instance.id, "MKT-FLOW-001-A")

    # Actions run in the background; wait for them before reading results.
    await service.drain()
    for execution in service.dispatcher.executions():
        print(f"{execution.action_type:8} {execution.status:8} retries={execution.retry_count}")

    await service.aclose()


if __name__ == "__main__":
    asyncio.run(main())
