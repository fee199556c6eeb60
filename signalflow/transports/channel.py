"""JSON-RPC 2.0 channel over a persistent websocket connection.

The channel is bidirectional: outbound calls are correlated with their
responses by id, and the remote peer may invoke methods registered locally
with :meth:`JsonRpcChannel.add_method`. Requests issued while the socket is
still connecting are held until it opens, or rejected if it fails first.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from ..errors import (
    ChannelClosedError,
    InvalidParamsError,
    RemoteError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

MethodHandler = Callable[[Any], Awaitable[Any]]
CloseCallback = Callable[[int, str], None]


class ChannelState(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class RpcChannel(Protocol):
    """Interface the runtime relies on; implemented by :class:`JsonRpcChannel`."""

    url: str

    @property
    def is_open(self) -> bool: ...

    def add_method(self, name: str, handler: MethodHandler) -> None: ...

    def on_close(self, callback: CloseCallback) -> None: ...

    async def request(
        self, method: str, params: Any = None, timeout: Optional[float] = None
    ) -> Any: ...

    def close(self, code: int = 1000, reason: str = "") -> None: ...


ChannelFactory = Callable[[str], RpcChannel]


class JsonRpcChannel:
    """One websocket connection with JSON-RPC request/response correlation."""

    def __init__(
        self,
        url: str,
        *,
        default_timeout: float = 60.0,
        open_timeout: float = 10.0,
        connect: Callable[..., Awaitable[Any]] = ws_connect,
    ) -> None:
        self.url = url
        self.default_timeout = default_timeout
        self.close_code: Optional[int] = None
        self.close_reason = ""
        self._connect = connect
        self._open_timeout = open_timeout
        self._state = ChannelState.CONNECTING
        self._closing = False
        self._ws: Any = None
        self._ids = itertools.count(1)
        self._pending: Dict[Any, asyncio.Future] = {}
        self._methods: Dict[str, MethodHandler] = {}
        self._close_callbacks: List[CloseCallback] = []
        self._opened = asyncio.Event()
        self._closed = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._runner = asyncio.get_running_loop().create_task(self._run())

    # ------------------------------------------------------------------
    # Public API
    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN and not self._closing

    def add_method(self, name: str, handler: MethodHandler) -> None:
        """Expose ``handler`` to the remote peer under ``name``."""
        self._methods[name] = handler

    def on_close(self, callback: CloseCallback) -> None:
        """Register ``callback(code, reason)``, fired once when the channel closes."""
        if self._state is ChannelState.CLOSED:
            asyncio.get_running_loop().call_soon(
                callback, self.close_code or 1006, self.close_reason
            )
            return
        self._close_callbacks.append(callback)

    async def request(
        self, method: str, params: Any = None, timeout: Optional[float] = None
    ) -> Any:
        """Call ``method`` on the remote peer and return its result."""
        if self._closing or self._state is ChannelState.CLOSED:
            raise ChannelClosedError(f"Connection is closed ({self.close_reason}).")
        timeout = self.default_timeout if timeout is None else timeout
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            return await asyncio.wait_for(self._send_and_wait(message, future), timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"Request {method} timed out after {timeout}s"
            ) from None
        finally:
            self._pending.pop(request_id, None)

    def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the connection; calling it again has no effect."""
        if self._closing or self._state is ChannelState.CLOSED:
            return
        self._closing = True
        self._spawn(self._shutdown(code, reason))

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def __aenter__(self) -> "JsonRpcChannel":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()
        await self.wait_closed()

    # ------------------------------------------------------------------
    # Connection lifecycle
    async def _run(self) -> None:
        try:
            self._ws = await self._connect(self.url, open_timeout=self._open_timeout)
        except Exception as e:
            logger.warning(f"Failed to connect to {self.url}: {e}")
            self._finalize(1006, f"Connection error: {e}")
            return
        if not self._closing:
            self._state = ChannelState.OPEN
        self._opened.set()
        try:
            async for raw in self._ws:
                self._dispatch(raw)
        except ConnectionClosed:
            pass
        except Exception as e:
            logger.warning(f"WebSocket error on {self.url}: {e}")
        self._finalize(self._ws.close_code or 1006, self._ws.close_reason or "")

    async def _shutdown(self, code: int, reason: str) -> None:
        if self._ws is None:
            self._runner.cancel()
            self._finalize(code, reason)
            return
        try:
            await self._ws.close(code, reason)
        except Exception as e:
            logger.debug(f"Error while closing {self.url}: {e}")
        self._finalize(code, reason)

    def _finalize(self, code: int, reason: str) -> None:
        if self._state is ChannelState.CLOSED:
            return
        self._state = ChannelState.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._opened.set()
        self._closed.set()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(
                    ChannelClosedError(f"Connection is closed ({reason}).")
                )
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(code, reason)
            except Exception:
                logger.exception(f"Close callback failed for {self.url}")

    # ------------------------------------------------------------------
    # Framing
    async def _send(self, message: Dict[str, Any]) -> None:
        if self._state is ChannelState.CONNECTING:
            await self._opened.wait()
        if self._state is not ChannelState.OPEN or self._ws is None:
            raise ChannelClosedError(f"Connection is closed ({self.close_reason}).")
        try:
            await self._ws.send(json.dumps(message, default=str))
        except ConnectionClosed as e:
            raise ChannelClosedError(f"Connection is closed ({e}).") from e

    async def _send_and_wait(
        self, message: Dict[str, Any], future: asyncio.Future
    ) -> Any:
        try:
            await self._send(message)
        except BaseException:
            if future.done() and not future.cancelled():
                future.exception()
            raise
        return await future

    def _dispatch(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed message from {self.url}")
            return
        for item in message if isinstance(message, list) else [message]:
            if not isinstance(item, dict):
                continue
            if "method" in item:
                self._spawn(self._handle_request(item))
            elif "id" in item:
                self._handle_response(item)

    def _handle_response(self, item: Dict[str, Any]) -> None:
        future = self._pending.get(item["id"])
        if future is None or future.done():
            return
        error = item.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            future.set_exception(
                RemoteError(
                    error.get("code", INTERNAL_ERROR),
                    error.get("message", "Unknown error"),
                    error.get("data"),
                )
            )
        else:
            future.set_result(item.get("result"))

    async def _handle_request(self, item: Dict[str, Any]) -> None:
        request_id = item.get("id")
        method = item.get("method")
        handler = self._methods.get(method)
        response: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        if handler is None:
            response["error"] = {
                "code": METHOD_NOT_FOUND,
                "message": f"Method not found: {method}",
            }
        else:
            try:
                response["result"] = await handler(item.get("params"))
            except InvalidParamsError as e:
                response["error"] = {"code": INVALID_PARAMS, "message": str(e)}
            except Exception as e:
                logger.warning(f"Method {method} failed: {e}")
                response["error"] = {"code": INTERNAL_ERROR, "message": str(e)}
        if request_id is None:
            return
        try:
            await self._send(response)
        except ChannelClosedError:
            logger.debug(f"Dropping response to {method}: channel closed")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
