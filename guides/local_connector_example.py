"""Run one workflow against a toy connector served on localhost.

The connector emits a signal every second after ``setupSignal`` and answers
``runAction`` by upper-casing the message it receives.
"""

import asyncio
import json

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from signalflow import (
    AccessClaims,
    ConnectorSchema,
    ConnectorSchemaResolver,
    RuntimeContext,
    Tracker,
    WorkflowManager,
)
from signalflow.persistence import InMemoryWorkflowStore

PORT = 8765
URL = f"ws://127.0.0.1:{PORT}/"


async def toy_connector(ws):
    """Minimal JSON-RPC connector: one trigger and one action."""
    counter = 0

    async def emit(session_id):
        nonlocal counter
        while True:
            await asyncio.sleep(1)
            counter += 1
            await ws.send(
                json.dumps(
                    {
                        "jsonrpc": "2.0",
                        "id": f"signal-{counter}",
                        "method": "notifySignal",
                        "params": {"key": "tick", "sessionId": session_id, "payload": {"n": counter}},
                    }
                )
            )

    emitter = None
    try:
        async for raw in ws:
            message = json.loads(raw)
            if "method" not in message:
                continue
            params = message.get("params") or {}
            result = None
            if message["method"] == "setupSignal" and emitter is None:
                emitter = asyncio.create_task(emit(params["sessionId"]))
            elif message["method"] == "runAction":
                result = {
                    "key": params["key"],
                    "sessionId": params["sessionId"],
                    "payload": {"shout": params["fields"]["message"].upper()},
                }
            await ws.send(json.dumps({"jsonrpc": "2.0", "id": message["id"], "result": result}))
    except ConnectionClosed:
        pass
    finally:
        if emitter is not None:
            emitter.cancel()


async def main():
    """Create a workflow, let it run for a few signals, then print its log."""
    schema = ConnectorSchema.model_validate(
        {
            "key": "toy",
            "triggers": [{"key": "tick", "operation": {"type": "polling", "operation": {"url": URL}}}],
            "actions": [
                {
                    "key": "shout",
                    "operation": {
                        "type": "api",
                        "operation": {"url": URL},
                        "inputFields": [{"key": "message", "type": "string", "required": True}],
                    },
                }
            ],
        }
    )
    context = RuntimeContext(
        store=InMemoryWorkflowStore(),
        resolver=ConnectorSchemaResolver(builtin={"toy": schema}),
        tracker=Tracker(sink=lambda account, event, props: print(f"📈 {event}")),
    )
    manager = WorkflowManager(context)
    user = AccessClaims(sub="eip155:1:0x0000000000000000000000000000000000000001")

    async with serve(toy_connector, "127.0.0.1", PORT):
        key = await manager.create_workflow(
            user,
            {
                "title": "Shout every tick",
                "trigger": {"connector": "toy", "operation": "tick"},
                "actions": [
                    {"connector": "toy", "operation": "shout", "input": {"message": "tick {{trigger.n}}"}}
                ],
            },
        )
        print(f"✅ Workflow created: {key}")
        await asyncio.sleep(3.5)
        await manager.shutdown()

    for execution in await manager.get_workflow_executions(user, key):
        log = await manager.get_execution_log(user, execution.execution_id)
        print(f"📋 {execution.execution_id}: {[r.output for r in log]}")


if __name__ == "__main__":
    asyncio.run(main())
