"""Execution of a single workflow action against its connector."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional
from uuid import uuid4

from ..auth import AccessClaims
from ..contracts import (
    ActionDefinition,
    ApiOperation,
    BlockchainCallOperation,
    ConnectorOutput,
    OperationSchema,
)
from ..errors import (
    ActionNotFoundError,
    InvalidOperationTypeError,
    UnsupportedOperationError,
)
from ..schema import WEB3_CONNECTOR
from .context import RuntimeContext

logger = logging.getLogger(__name__)

WEB3_CALL_ACTION = "callSmartContract"
WS_URL = re.compile(r"^wss?://", re.IGNORECASE)


def blockchain_call_fields(
    operation: BlockchainCallOperation, input: Dict[str, Any]
) -> Dict[str, Any]:
    """Remap the input of a contract call to the web3 connector's fields."""
    fields = {
        "chain": input.get("_grinderyChain") or "eth",
        "contractAddress": input.get("_grinderyContractAddress"),
        "functionDeclaration": operation.signature,
        "parameters": input,
        "maxFeePerGas": input.get("_grinderyMaxFeePerGas"),
        "maxPriorityFeePerGas": input.get("_grinderyMaxPriorityFeePerGas"),
    }
    return {k: v for k, v in fields.items() if v is not None}


async def run_action(
    ctx: RuntimeContext,
    *,
    action: ActionDefinition,
    input: Dict[str, Any],
    step: OperationSchema,
    session_id: Optional[str],
    execution_id: str,
    environment: str,
    user: AccessClaims,
    dry_run: bool = False,
) -> Any:
    """Run one action step and return the payload the connector responded with."""
    operation_key = step.operation
    operation = action.operation
    input = dict(input)

    if isinstance(operation, BlockchainCallOperation):
        web3 = await ctx.resolver.get(WEB3_CONNECTOR, environment)
        web3_action = web3.find_action(WEB3_CALL_ACTION)
        if web3_action is None:
            raise ActionNotFoundError("Web3 call action not found")
        input = blockchain_call_fields(operation, input)
        operation_key = WEB3_CALL_ACTION
        operation = web3_action.operation

    if operation.requires_user_token:
        input["_grinderyUserToken"] = ctx.sign_user_token(user)

    if not isinstance(operation, ApiOperation):
        raise InvalidOperationTypeError(f"Invalid action type: {operation.type}")
    url = operation.operation.url
    if not WS_URL.match(url):
        raise UnsupportedOperationError(f"Unsupported action URL: {url}")

    body = {
        "key": operation_key,
        "sessionId": session_id,
        "cdsName": step.connector,
        "executionId": execution_id,
        "credentials": step.credentials,
        "authentication": step.authentication,
        "fields": {**input, "dryRun": dry_run},
    }
    channel = ctx.open_channel(url)
    try:
        logger.debug(f"Sending runAction: {body}")
        result = await channel.request(
            "runAction", body, timeout=ctx.settings.request_timeout
        )
    finally:
        channel.close()
    return ConnectorOutput.model_validate(result or {}).payload


async def run_single_action(
    ctx: RuntimeContext,
    *,
    step: OperationSchema,
    input: Dict[str, Any],
    environment: str,
    user: AccessClaims,
    dry_run: bool = False,
) -> Any:
    """Run ``step`` outside any workflow, with throwaway session and execution ids."""
    connector = await ctx.resolver.get(step.connector, environment)
    action = connector.find_action(step.operation)
    if action is None:
        raise ActionNotFoundError(f"Invalid action: {step.connector}/{step.operation}")
    return await run_action(
        ctx,
        action=action,
        input=input,
        step=step,
        session_id=str(uuid4()),
        execution_id=str(uuid4()),
        environment=environment,
        user=user,
        dry_run=dry_run,
    )
