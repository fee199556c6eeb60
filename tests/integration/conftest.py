"""A scripted JSON-RPC connector served over a real websocket."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest_asyncio
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from signalflow.errors import RemoteError


class ConnectorServer:
    def __init__(self) -> None:
        self.handlers: Dict[str, Callable[[ServerConnection, Any], Any]] = {}
        self.received: List[Tuple[str, Any]] = []
        self.connections: List[ServerConnection] = []
        self.close_codes: List[Optional[int]] = []
        self.port = 0
        self._server: Any = None
        self._ids = itertools.count(1)
        self._waiting: Dict[int, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def url(self) -> str:
        return f"ws://127.0.0.1:{self.port}/"

    def params_of(self, method: str) -> List[Any]:
        return [params for m, params in self.received if m == method]

    async def start(self) -> None:
        self._server = await serve(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._server.close()
        await self._server.wait_closed()

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def call(self, ws: ServerConnection, method: str, params: Any = None) -> Dict[str, Any]:
        """Invoke a method on the client and return the raw response message."""
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._waiting[request_id] = future
        message = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        await ws.send(json.dumps(message))
        return await asyncio.wait_for(future, 2)

    async def _handle(self, ws: ServerConnection) -> None:
        self.connections.append(ws)
        try:
            async for raw in ws:
                message = json.loads(raw)
                if "method" in message:
                    self.spawn(self._answer(ws, message))
                else:
                    future = self._waiting.pop(message.get("id"), None)
                    if future is not None and not future.done():
                        future.set_result(message)
        except ConnectionClosed:
            pass
        finally:
            self.close_codes.append(ws.close_code)

    async def _answer(self, ws: ServerConnection, message: Dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params")
        self.received.append((method, params))
        response: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}
        handler = self.handlers.get(method)
        try:
            result = handler(ws, params) if handler is not None else None
            if inspect.isawaitable(result):
                result = await result
            response["result"] = result
        except RemoteError as e:
            response["error"] = {"code": e.code, "message": e.message}
        try:
            await ws.send(json.dumps(response))
        except ConnectionClosed:
            pass


@pytest_asyncio.fixture
async def connector_server():
    server = ConnectorServer()
    await server.start()
    yield server
    await server.stop()
