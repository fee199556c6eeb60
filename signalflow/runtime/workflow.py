"""Lifecycle of one live workflow: trigger subscription and action chain.

A :class:`RuntimeWorkflow` keeps a ``setupSignal`` subscription open on the
trigger connector, reconnecting with exponential backoff and halting after
too many consecutive failures. Each ``notifySignal`` pushed by the connector
starts an independent run of the action chain.

All continuations (backoff sleeps, retries, keep-alive iterations, the
stability timer) capture ``version`` and give up when it has moved on, so
``stop()`` never has to cancel anything explicitly.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple
from uuid import uuid4

from ..auth import AccessClaims
from ..contracts import (
    BlockchainEventOperation,
    ConnectorOutput,
    HookOperation,
    PollingOperation,
    TriggerDefinition,
    WorkflowSchema,
)
from ..errors import (
    ActionNotFoundError,
    InvalidOperationTypeError,
    InvalidParamsError,
    TriggerNotFoundError,
    UnsupportedOperationError,
)
from ..persistence import NIL_UUID, TRIGGER_STEP_INDEX, ExecutionRecord
from ..persistence.models import utcnow
from ..schema import WEB3_CONNECTOR
from ..transports import RpcChannel
from ..utils.retry import compute_backoff, compute_keepalive_delay
from .action import WS_URL, run_action
from .context import RuntimeContext
from .inputs import replace_tokens, sanitize_input

logger = logging.getLogger(__name__)

WEB3_EVENT_TRIGGER = "newEvent"
HALT_MESSAGE = "Too many attempts to setup signal, the workflow is halted"

CLOSE_SETUP_FAILED = 3001
CLOSE_KEEPALIVE_FAILED = 3002
CLOSE_PING_TIMEOUT = 3003


class WorkflowStatus(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    TRIGGER_PENDING = "trigger_pending"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    HALTED = "halted"
    STOPPED = "stopped"


SignalHandler = Callable[["RuntimeWorkflow", ConnectorOutput], Awaitable[Any]]


async def run_action_chain(workflow: "RuntimeWorkflow", signal: ConnectorOutput) -> bool:
    return await workflow.run_workflow(signal)


class RuntimeWorkflow:
    """Run one workflow for as long as it is enabled."""

    def __init__(
        self,
        key: str,
        workflow: WorkflowSchema,
        account_id: str,
        environment: str,
        context: RuntimeContext,
        *,
        workspace: Optional[str] = None,
        on_signal: SignalHandler = run_action_chain,
    ) -> None:
        self.key = key
        self.workflow = workflow
        self.account_id = account_id
        self.environment = environment
        self.workspace = workspace
        self.context = context
        self.settings = context.settings
        self.status = WorkflowStatus.IDLE
        self.running = False
        self.version = 0
        self.start_count = 0
        self.trigger_channel: Optional[RpcChannel] = None
        self._on_signal = on_signal
        self._keepalive_running = False
        self._setup_running = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def user(self) -> AccessClaims:
        if self.workspace:
            return AccessClaims(sub=self.account_id, workspace=self.workspace, role="user")
        return AccessClaims(sub=self.account_id)

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.version += 1
        self.start_count = 0
        self.status = WorkflowStatus.STARTING
        await self.setup_trigger()

    def stop(self) -> None:
        was_running = self.running
        self.running = False
        channel, self.trigger_channel = self.trigger_channel, None
        if channel is not None:
            channel.close()
        self.version += 1
        self.status = WorkflowStatus.STOPPED
        if was_running:
            logger.debug(f"[{self.key}] Stopped")

    async def aclose(self) -> None:
        """Stop and cancel background work, including in-flight runs."""
        self.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _is_current(self, version: int) -> bool:
        return self.running and self.version == version

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.key}] Unexpected failure: {exc}")
            self.context.error_sink(exc)

    # ------------------------------------------------------------------
    # Trigger setup
    async def setup_trigger(self) -> None:
        if self._setup_running:
            return
        self._setup_running = True
        try:
            await self._setup_trigger()
        finally:
            self._setup_running = False

    async def _setup_trigger(self) -> None:
        self.version += 1
        current_version = self.version
        if self.start_count > self.settings.max_start_attempts:
            await self._halt()
            return
        self.start_count += 1
        wait = compute_backoff(
            self.start_count,
            base=self.settings.backoff_base,
            jitter=self.settings.backoff_jitter,
        )
        if self.start_count > 1:
            logger.info(f"[{self.key}] Retrying after {int(wait)}s")
        await asyncio.sleep(wait)
        if not self._is_current(current_version):
            self._resume_if_restarted()
            return
        self.status = WorkflowStatus.TRIGGER_PENDING
        current_start_count = self.start_count
        session_id = str(uuid4())
        channel: Optional[RpcChannel] = None
        try:
            trigger, fields = await self._resolve_trigger()
            url = self._polling_url(trigger)
            init_states = await self.context.store.get_states(self.key)
            if not self._is_current(current_version):
                self._resume_if_restarted()
                return
            logger.info(f"[{self.key}] Starting polling: {session_id} {url}")
            channel = self._open_trigger_channel(url)
            body = {
                "key": trigger.key,
                "sessionId": session_id,
                "cdsName": self.workflow.trigger.connector,
                "credentials": self.workflow.trigger.credentials,
                "authentication": self.workflow.trigger.authentication,
                "initStates": init_states,
                "fields": fields,
            }
            logger.debug(f"[{self.key}] Sending setupSignal: {body}")
            await channel.request(
                "setupSignal", body, timeout=self.settings.request_timeout
            )
        except Exception as e:
            await self._setup_failed(channel, session_id, e, current_version)
            return
        if not self._is_current(current_version):
            channel.close()
            self._resume_if_restarted()
            return

        logger.debug(
            f"[{self.key}] Started trigger "
            f"{self.workflow.trigger.connector}/{self.workflow.trigger.operation}"
        )
        self.status = WorkflowStatus.ACTIVE
        self._spawn(self.keep_alive())
        asyncio.get_running_loop().call_later(
            self.settings.stability_window,
            self._reset_start_count,
            current_start_count,
            current_version,
        )

    async def _resolve_trigger(self) -> Tuple[TriggerDefinition, Dict[str, Any]]:
        step = self.workflow.trigger
        resolver = self.context.resolver
        connector = await resolver.get(step.connector, self.environment)
        trigger = connector.find_trigger(step.operation)
        if trigger is None:
            raise TriggerNotFoundError(
                f"Trigger not found: {step.connector}/{step.operation}"
            )
        fields = sanitize_input(step.input, trigger.operation.input_fields)
        if isinstance(trigger.operation, BlockchainEventOperation):
            web3 = await resolver.get(WEB3_CONNECTOR, self.environment)
            web3_trigger = web3.find_trigger(WEB3_EVENT_TRIGGER)
            if web3_trigger is None:
                raise TriggerNotFoundError("Web3 trigger not found")
            fields = {
                k: v
                for k, v in {
                    "chain": fields.get("_grinderyChain") or "eth",
                    "contractAddress": fields.get("_grinderyContractAddress"),
                    "eventDeclaration": trigger.operation.signature,
                    "parameterFilters": fields,
                }.items()
                if v is not None
            }
            trigger = web3_trigger
        if trigger.operation.requires_user_token:
            fields["_grinderyUserToken"] = self.context.sign_user_token(self.user)
        return trigger, fields

    @staticmethod
    def _polling_url(trigger: TriggerDefinition) -> str:
        operation = trigger.operation
        if isinstance(operation, HookOperation):
            raise UnsupportedOperationError(f"Not implemented: {operation.type}")
        if not isinstance(operation, PollingOperation):
            raise InvalidOperationTypeError(f"Invalid trigger type: {operation.type}")
        url = operation.operation.url
        if not WS_URL.match(url):
            raise UnsupportedOperationError(f"Unsupported polling URL: {url}")
        return url

    def _open_trigger_channel(self, url: str) -> RpcChannel:
        channel = self.context.open_channel(url)
        channel.on_close(
            lambda code, reason: self._trigger_channel_closed(channel, code, reason)
        )
        previous, self.trigger_channel = self.trigger_channel, channel
        if previous is not None:
            previous.close()
        channel.add_method("notifySignal", self.notify_signal)
        channel.add_method("getState", self._get_state)
        channel.add_method("setState", self._set_state)
        return channel

    async def _setup_failed(
        self,
        channel: Optional[RpcChannel],
        session_id: str,
        error: Exception,
        version: int,
    ) -> None:
        if channel is not None:
            if channel is self.trigger_channel:
                self.trigger_channel = None
            channel.close(CLOSE_SETUP_FAILED, str(error))
        if not self._is_current(version):
            logger.debug(f"[{self.key}] Ignoring stale setup failure: {error}")
            self._resume_if_restarted()
            return
        logger.error(f"[{self.key}] Failed to setup signal: {error}")
        now = utcnow()
        await self.context.store.insert_execution(
            ExecutionRecord(
                workflow_key=self.key,
                session_id=session_id,
                execution_id=NIL_UUID,
                step_index=TRIGGER_STEP_INDEX,
                input={},
                error=str(error),
                started_at=now,
                ended_at=now,
            )
        )
        self.context.tracker.track(
            self.account_id,
            "Workflow Trigger Setup Error",
            {"workflow": self.key, "error": str(error)},
        )
        self.status = WorkflowStatus.RECONNECTING
        self._schedule_setup(self.settings.retry_delay)

    def _trigger_channel_closed(self, channel: RpcChannel, code: int, reason: str) -> None:
        logger.info(f"[{self.key}] WebSocket closed ({code} - {reason})")
        if channel is not self.trigger_channel:
            return
        if not self.running:
            return
        self.status = WorkflowStatus.RECONNECTING
        self._schedule_setup(self.settings.retry_delay)

    def _schedule_setup(self, delay: float) -> None:
        version = self.version

        async def retry() -> None:
            await asyncio.sleep(delay)
            if not self._is_current(version):
                return
            await self.setup_trigger()

        self._spawn(retry())

    def _resume_if_restarted(self) -> None:
        # start() ran again while a stale attempt still held the setup guard
        if self.running:
            self._schedule_setup(0)

    def _reset_start_count(self, start_count: int, version: int) -> None:
        if self.start_count == start_count and self.version == version:
            self.start_count = 0

    async def _halt(self) -> None:
        logger.error(f"[{self.key}] {HALT_MESSAGE}")
        now = utcnow()
        await self.context.store.insert_execution(
            ExecutionRecord(
                workflow_key=self.key,
                session_id=NIL_UUID,
                execution_id=NIL_UUID,
                step_index=TRIGGER_STEP_INDEX,
                input={},
                error=HALT_MESSAGE,
                started_at=now,
                ended_at=now,
            )
        )
        self.context.tracker.track(
            self.account_id,
            "Workflow Halted After Too Many Trigger Failures",
            {"workflow": self.key},
        )
        self.stop()
        self.status = WorkflowStatus.HALTED

    # ------------------------------------------------------------------
    # Keep-alive
    async def keep_alive(self) -> None:
        if self._keepalive_running or not self.running:
            return
        self._keepalive_running = True
        interval = self.settings.keepalive_interval
        try:
            while self.running:
                await asyncio.sleep(compute_keepalive_delay(interval))
                channel = self.trigger_channel
                if channel is None or not channel.is_open:
                    if self.running:
                        logger.warning(
                            f"[{self.key}] Not sending keep alive request because WebSocket is not open"
                        )
                    continue
                await self._ping(channel)
        except Exception as e:
            logger.warning(f"[{self.key}] Failed to keep alive: {e}")
            if self.trigger_channel is not None:
                self.trigger_channel.close(CLOSE_KEEPALIVE_FAILED, "Failed to keep alive")
        finally:
            self._keepalive_running = False
        if self.running:
            self._spawn(self.keep_alive())

    async def _ping(self, channel: RpcChannel) -> None:
        watchdog = asyncio.get_running_loop().call_later(
            self.settings.ping_watchdog, self._ping_timed_out, channel
        )
        try:
            await channel.request("ping", timeout=self.settings.ping_timeout)
        finally:
            watchdog.cancel()

    def _ping_timed_out(self, channel: RpcChannel) -> None:
        logger.warning(f"[{self.key}] Keep alive: Ping doesn't return")
        channel.close(CLOSE_PING_TIMEOUT, "ping doesn't return")

    # ------------------------------------------------------------------
    # Inbound methods
    async def notify_signal(self, params: Any) -> None:
        if not self.running:
            return None
        if not params:
            raise InvalidParamsError("Invalid payload")
        signal = ConnectorOutput.model_validate(params)
        logger.debug(f"[{self.key}] Received signal")
        self.context.tracker.track(
            self.account_id, "Received Signal", {"workflow": self.key}
        )
        self._spawn(self._handle_signal(signal))
        return None

    async def _handle_signal(self, signal: ConnectorOutput) -> None:
        try:
            await self._on_signal(self, signal)
        except Exception as e:
            self.context.tracker.track(
                self.account_id, "Workflow Error", {"workflow": self.key}
            )
            logger.error(f"[{self.key}] Workflow run failed: {e}")
            self.context.error_sink(e)

    @staticmethod
    def _state_key(params: Any) -> str:
        if not isinstance(params, dict) or not isinstance(params.get("key"), str):
            raise InvalidParamsError("State key is required")
        return params["key"]

    async def _get_state(self, params: Any) -> Any:
        return await self.context.store.get_state(self.key, self._state_key(params))

    async def _set_state(self, params: Any) -> None:
        state_key = self._state_key(params)
        await self.context.store.set_state(self.key, state_key, params.get("value"))
        return None

    # ------------------------------------------------------------------
    # Action chain
    async def run_workflow(self, signal: ConnectorOutput) -> bool:
        """Run every action step in order; return False when the chain aborted."""
        store = self.context.store
        tracker = self.context.tracker
        session_id = signal.session_id
        execution_id = str(uuid4())
        now = utcnow()
        await store.insert_execution(
            ExecutionRecord(
                workflow_key=self.key,
                session_id=session_id,
                execution_id=execution_id,
                step_index=TRIGGER_STEP_INDEX,
                input={},
                output=signal.payload,
                started_at=now,
                ended_at=now,
            )
        )
        context: Dict[str, Any] = {"trigger": signal.payload}
        for index, step in enumerate(self.workflow.actions):
            logger.debug(
                f"[{self.key}] Running step {index}: {step.connector}/{step.operation}"
            )
            action = None
            step_input = None
            error: Optional[Exception] = None
            try:
                connector = await self.context.resolver.get(
                    step.connector, self.environment
                )
                action = connector.find_action(step.operation)
                if action is None:
                    raise ActionNotFoundError(
                        f"Invalid action: {step.connector}/{step.operation}"
                    )
                step_input = replace_tokens(step.input, context)
                step_input = sanitize_input(step_input, action.operation.input_fields)
            except Exception as e:
                error = e
            await store.insert_execution(
                ExecutionRecord(
                    workflow_key=self.key,
                    session_id=session_id,
                    execution_id=execution_id,
                    step_index=index,
                    input=step_input,
                    error=str(error) if error is not None else None,
                )
            )
            if error is not None or action is None:
                logger.debug(f"[{self.key}] Aborted at step {index}: {error}")
                return False

            try:
                output = await run_action(
                    self.context,
                    action=action,
                    input=step_input,
                    step=step,
                    session_id=session_id,
                    execution_id=execution_id,
                    environment=self.environment,
                    user=self.user,
                )
            except Exception as e:
                tracker.track(
                    self.account_id,
                    "Workflow Step Error",
                    {"workflow": self.key, "index": index, "error": str(e)},
                )
                logger.debug(f"[{self.key}] Failed step {index}: {e}")
                await store.complete_execution_step(execution_id, index, error=str(e))
                return False
            tracker.track(
                self.account_id,
                "Workflow Step Complete",
                {"workflow": self.key, "index": index},
            )
            context[f"step{index}"] = output
            await store.complete_execution_step(execution_id, index, output=output)

        tracker.track(self.account_id, "Workflow Complete", {"workflow": self.key})
        logger.debug(f"[{self.key}] Completed")
        return True
