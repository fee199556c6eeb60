"""Tests for connector schema lookup and caching."""

import asyncio

import httpx
import pytest

from signalflow.config import SchemaConfig
from signalflow.errors import ConnectorNotFoundError
from signalflow.schema import ConnectorSchemaResolver

SCHEMA = {
    "key": "slack",
    "version": "1.0.0",
    "triggers": [],
    "actions": [
        {
            "key": "postMessage",
            "operation": {"type": "api", "operation": {"url": "wss://slack.test/"}},
        }
    ],
}


def _resolver(handler, requests):
    def record(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        return handler(request)

    return ConnectorSchemaResolver(
        "https://schemas.test/",
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(record)),
    )


@pytest.mark.asyncio
async def test_fetches_by_environment_and_caches():
    requests = []
    resolver = _resolver(lambda r: httpx.Response(200, json=SCHEMA), requests)

    schema = await resolver.get("slack", "staging")
    again = await resolver.get("slack", "staging")

    assert schema.find_action("postMessage") is not None
    assert again is schema
    assert requests == ["https://schemas.test/staging/slack.json"]


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_fetch():
    requests = []
    resolver = _resolver(lambda r: httpx.Response(200, json=SCHEMA), requests)

    results = await asyncio.gather(*(resolver.get("slack") for _ in range(5)))

    assert all(r is results[0] for r in results)
    assert requests == ["https://schemas.test/production/slack.json"]


@pytest.mark.asyncio
async def test_missing_connector_is_not_cached():
    requests = []
    resolver = _resolver(lambda r: httpx.Response(404), requests)

    for _ in range(2):
        with pytest.raises(ConnectorNotFoundError):
            await resolver.get("nope")
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_version_change_invalidates_environment():
    requests = []
    resolver = _resolver(lambda r: httpx.Response(200, json=SCHEMA), requests)
    await resolver.get("slack", "production")
    await resolver.get("slack", "staging")

    assert resolver.observe_version("production", "abc") is False
    assert resolver.observe_version("production", "def") is True

    await resolver.get("slack", "production")
    await resolver.get("slack", "staging")
    assert requests.count("https://schemas.test/production/slack.json") == 2
    assert requests.count("https://schemas.test/staging/slack.json") == 1


@pytest.mark.asyncio
async def test_builtin_web3_schema_from_config():
    resolver = ConnectorSchemaResolver.from_config(
        SchemaConfig(web3_connector_url="wss://web3.test/")
    )
    web3 = await resolver.get("web3", "staging")
    assert web3.find_trigger("newEvent").operation.operation.url == "wss://web3.test/"
    assert web3.find_action("callSmartContract").operation.requires_user_token


@pytest.mark.asyncio
async def test_without_base_url_unknown_connectors_fail():
    resolver = ConnectorSchemaResolver()
    with pytest.raises(ConnectorNotFoundError):
        await resolver.get("slack")


@pytest.mark.asyncio
async def test_invalidate_by_connector():
    requests = []
    resolver = _resolver(lambda r: httpx.Response(200, json=SCHEMA), requests)
    await resolver.get("slack")
    await resolver.get("other")

    resolver.invalidate("slack")
    await resolver.get("slack")
    await resolver.get("other")

    assert requests.count("https://schemas.test/production/slack.json") == 2
    assert requests.count("https://schemas.test/production/other.json") == 1
