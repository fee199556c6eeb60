"""Connector schema lookup with per-environment caching."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from .contracts import ConnectorSchema
from .errors import ConnectorNotFoundError

logger = logging.getLogger(__name__)

WEB3_CONNECTOR = "web3"


def web3_connector_schema(url: str) -> ConnectorSchema:
    """Built-in schema of the generic blockchain connector."""
    chain = {
        "key": "chain",
        "label": "Name of the blockchain",
        "type": "string",
        "required": True,
        "default": "eth",
    }
    contract = {
        "key": "contractAddress",
        "label": "Contract address",
        "type": "string",
        "placeholder": "0x...",
        "required": True,
    }
    return ConnectorSchema.model_validate(
        {
            "key": WEB3_CONNECTOR,
            "name": "Web3 connector",
            "version": "1.0.0",
            "triggers": [
                {
                    "key": "newEvent",
                    "name": "New smart contract event",
                    "operation": {
                        "type": "polling",
                        "operation": {"url": url},
                        "inputFields": [
                            chain,
                            contract,
                            {
                                "key": "eventDeclaration",
                                "label": "Event declaration",
                                "type": "string",
                                "required": True,
                            },
                        ],
                    },
                },
                {
                    "key": "newTransaction",
                    "name": "New transaction",
                    "operation": {
                        "type": "polling",
                        "operation": {"url": url},
                        "inputFields": [
                            chain,
                            {"key": "from", "label": "From address", "type": "string"},
                            {"key": "to", "label": "To address", "type": "string"},
                        ],
                    },
                },
            ],
            "actions": [
                {
                    "key": "callSmartContract",
                    "name": "Call smart contract function",
                    "operation": {
                        "type": "api",
                        "requiresUserToken": True,
                        "operation": {"url": url},
                        "inputFields": [
                            chain,
                            contract,
                            {
                                "key": "functionDeclaration",
                                "label": "Function declaration",
                                "type": "string",
                                "required": True,
                            },
                            {"key": "maxFeePerGas", "type": "number"},
                            {"key": "maxPriorityFeePerGas", "type": "number"},
                        ],
                    },
                }
            ],
        }
    )


class ConnectorSchemaResolver:
    """Resolve connector schemas by ``(connector_id, environment)``.

    Successful lookups are cached until invalidated; concurrent lookups of
    the same key share one fetch. Failed fetches are not cached.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        builtin: Optional[Dict[str, ConnectorSchema]] = None,
        client_factory: Callable[[], httpx.AsyncClient] = httpx.AsyncClient,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self._builtin = dict(builtin or {})
        self._client_factory = client_factory
        self._timeout = timeout
        self._cache: Dict[Tuple[str, str], ConnectorSchema] = {}
        self._inflight: Dict[Tuple[str, str], asyncio.Task] = {}
        self._versions: Dict[str, str] = {}

    @classmethod
    def from_config(cls, config: Any) -> "ConnectorSchemaResolver":
        builtin = {}
        if config.web3_connector_url:
            builtin[WEB3_CONNECTOR] = web3_connector_schema(config.web3_connector_url)
        return cls(config.base_url, builtin=builtin, timeout=config.timeout)

    def schema_url(self, connector_id: str, environment: str) -> str:
        if not self.base_url:
            raise ConnectorNotFoundError(
                f"Connector not found: {connector_id} (no schema URL configured)"
            )
        return f"{self.base_url}/{environment}/{connector_id}.json"

    async def get(
        self, connector_id: str, environment: str = "production"
    ) -> ConnectorSchema:
        if connector_id in self._builtin:
            return self._builtin[connector_id]
        cache_key = (connector_id, environment)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached
        task = self._inflight.get(cache_key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(connector_id, environment))
            self._inflight[cache_key] = task
            task.add_done_callback(lambda _: self._inflight.pop(cache_key, None))
        schema = await asyncio.shield(task)
        self._cache[cache_key] = schema
        return schema

    async def _fetch(self, connector_id: str, environment: str) -> ConnectorSchema:
        url = self.schema_url(connector_id, environment)
        logger.debug(f"Fetching connector schema {connector_id} ({environment}) from {url}")
        async with self._client_factory() as client:
            try:
                response = await client.get(url, timeout=self._timeout)
            except httpx.HTTPError as e:
                logger.error(f"Error getting connector schema {connector_id}: {e}")
                raise
        if response.status_code == 404:
            raise ConnectorNotFoundError(f"Connector not found: {connector_id}")
        response.raise_for_status()
        return ConnectorSchema.model_validate(response.json())

    def invalidate(
        self, connector_id: Optional[str] = None, environment: Optional[str] = None
    ) -> None:
        """Drop cached schemas matching the given filters (all when omitted)."""
        for key in list(self._cache):
            if connector_id is not None and key[0] != connector_id:
                continue
            if environment is not None and key[1] != environment:
                continue
            del self._cache[key]

    def observe_version(self, environment: str, version: str) -> bool:
        """Record the deployed schema version; clear the cache when it changed.

        The resolver does not poll for versions itself. The embedding
        application calls this whenever it learns the commit or release of
        the schema repository, for example from a deploy hook.
        """
        previous = self._versions.get(environment)
        self._versions[environment] = version
        if previous is not None and previous != version:
            logger.info(
                f"Connector schemas for {environment} changed ({previous} -> {version})"
            )
            self.invalidate(environment=environment)
            return True
        return False
