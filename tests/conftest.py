"""Shared fixtures: a scripted connector channel and a fast runtime context."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Tuple

import pytest

from signalflow.auth import AccessTokenSigner
from signalflow.config import RuntimeSettings
from signalflow.contracts import ConnectorSchema
from signalflow.errors import ChannelClosedError
from signalflow.persistence import InMemoryWorkflowStore
from signalflow.runtime import RuntimeContext
from signalflow.schema import ConnectorSchemaResolver, web3_connector_schema
from signalflow.tracking import Tracker

MASTER_KEY = "m" * 64
TRIGGER_URL = "wss://demo.test/trigger"
ACTION_URL = "wss://demo.test/action"
WEB3_URL = "wss://web3.test/"

DEMO_SCHEMA = {
    "key": "demo",
    "name": "Demo connector",
    "triggers": [
        {
            "key": "tick",
            "operation": {
                "type": "polling",
                "operation": {"url": TRIGGER_URL},
                "inputFields": [
                    {"key": "interval", "type": "number", "default": "10000"},
                ],
            },
        },
        {
            "key": "tokenTick",
            "operation": {
                "type": "polling",
                "operation": {"url": TRIGGER_URL},
                "requiresUserToken": True,
            },
        },
        {"key": "hooked", "operation": {"type": "hook"}},
        {
            "key": "httpPoll",
            "operation": {"type": "polling", "operation": {"url": "https://demo.test/poll"}},
        },
        {
            "key": "transfer",
            "operation": {
                "type": "blockchain:event",
                "signature": "event Transfer(address indexed from, address indexed to, uint256 value)",
            },
        },
    ],
    "actions": [
        {
            "key": "echo",
            "operation": {
                "type": "api",
                "operation": {"url": ACTION_URL},
                "inputFields": [{"key": "message", "type": "string", "required": True}],
            },
        },
        {
            "key": "count",
            "operation": {
                "type": "api",
                "operation": {"url": ACTION_URL},
                "inputFields": [{"key": "n", "type": "number", "required": True}],
            },
        },
        {
            "key": "mint",
            "operation": {
                "type": "blockchain:call",
                "signature": "function mint(address to, uint256 amount)",
            },
        },
        {
            "key": "pollAction",
            "operation": {"type": "polling", "operation": {"url": ACTION_URL}},
        },
    ],
}

Handler = Callable[["FakeChannel", Any], Any]


class FakeChannel:
    """In-process stand-in for a connector websocket."""

    def __init__(self, url: str, connector: "FakeConnector") -> None:
        self.url = url
        self.connector = connector
        self.methods: Dict[str, Callable] = {}
        self.closed = False
        self.close_code: int | None = None
        self.close_reason = ""
        self._close_callbacks: List[Callable[[int, str], None]] = []

    @property
    def is_open(self) -> bool:
        return not self.closed

    def add_method(self, name: str, handler: Callable) -> None:
        self.methods[name] = handler

    def on_close(self, callback: Callable[[int, str], None]) -> None:
        self._close_callbacks.append(callback)

    async def request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        if self.closed:
            raise ChannelClosedError("Connection is closed ().")
        self.connector.calls.append((self.url, method, params))
        handler = self.connector.handlers.get(method)
        if handler is None:
            return None
        result = handler(self, params)
        if inspect.isawaitable(result):
            result = await result
        return result

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        for callback in self._close_callbacks:
            callback(code, reason)

    async def invoke(self, method: str, params: Any = None) -> Any:
        """Call a method the runtime registered, as the remote peer would."""
        return await self.methods[method](params)


class FakeConnector:
    """Channel factory recording every channel and outbound call."""

    def __init__(self) -> None:
        self.channels: List[FakeChannel] = []
        self.calls: List[Tuple[str, str, Any]] = []
        self.handlers: Dict[str, Handler] = {}

    def __call__(self, url: str) -> FakeChannel:
        channel = FakeChannel(url, self)
        self.channels.append(channel)
        return channel

    def on(self, method: str, handler: Handler) -> None:
        self.handlers[method] = handler

    def calls_to(self, method: str) -> List[Any]:
        return [params for _, m, params in self.calls if m == method]

    @property
    def open_channels(self) -> List[FakeChannel]:
        return [c for c in self.channels if not c.closed]


@pytest.fixture
def fake_connector() -> FakeConnector:
    connector = FakeConnector()
    connector.on(
        "runAction",
        lambda channel, params: {
            "key": params["key"],
            "sessionId": params["sessionId"],
            "payload": {"received": params["fields"]},
        },
    )
    return connector


@pytest.fixture
def resolver() -> ConnectorSchemaResolver:
    return ConnectorSchemaResolver(
        builtin={
            "web3": web3_connector_schema(WEB3_URL),
            "demo": ConnectorSchema.model_validate(DEMO_SCHEMA),
        }
    )


@pytest.fixture
def signer() -> AccessTokenSigner:
    return AccessTokenSigner(MASTER_KEY)


@pytest.fixture
def tracked_events() -> List[Tuple[str, str, Dict[str, Any]]]:
    return []


@pytest.fixture
def reported_errors() -> List[BaseException]:
    return []


@pytest.fixture
def fast_settings() -> RuntimeSettings:
    return RuntimeSettings(
        keepalive_interval=3600,
        retry_delay=0,
        stability_window=3600,
        backoff_base=0,
        backoff_jitter=0,
    )


@pytest.fixture
def runtime_context(
    fake_connector, resolver, signer, tracked_events, reported_errors, fast_settings
) -> RuntimeContext:
    return RuntimeContext(
        store=InMemoryWorkflowStore(),
        resolver=resolver,
        signer=signer,
        tracker=Tracker(sink=lambda account, event, props: tracked_events.append((account, event, props))),
        settings=fast_settings,
        channel_factory=fake_connector,
        error_sink=reported_errors.append,
    )


@pytest.fixture
def eventually():
    """Return an awaitable that polls ``predicate`` until it holds."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return wait
