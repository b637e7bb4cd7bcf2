"""Tests for the registry gateway client (chain/gateway_client.py).

Uses mocked aiohttp sessions in place of a live gateway.
"""

import asyncio

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock
from aiohttp import ClientSession

from agentledger.chain.gateway_client import GatewayChainClient
from agentledger.exceptions import RejectedWriteError, TransientChainError

ACCOUNT = "0x" + "C3" * 20


def _mock_response(status=200, json_body=None):
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.json = AsyncMock(return_value=json_body if json_body is not None else {})
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)
    return mock_resp


def _session(get=None, post=None):
    mock_session = AsyncMock(spec=ClientSession)
    if get is not None:
        mock_session.get = MagicMock(return_value=get) if isinstance(get, AsyncMock) else get
    if post is not None:
        mock_session.post = MagicMock(return_value=post) if isinstance(post, AsyncMock) else post
    mock_session.closed = False
    return mock_session


@pytest.fixture
def client():
    return GatewayChainClient(base_url="http://127.0.0.1:8545", account=ACCOUNT)


# --- Event feed ---

async def test_block_number(client):
    client._session = _session(get=_mock_response(json_body={"number": 17}))
    assert await client.get_block_number() == 17
    assert client._session.get.call_args[0][0] == "/api/v1/blocks/latest"


async def test_get_block_parses_header(client):
    client._session = _session(get=_mock_response(json_body={
        "number": 5, "hash": "0xh5", "parent_hash": "0xh4", "timestamp": 1700000005,
    }))
    header = await client.get_block(5)
    assert (header.number, header.hash, header.parent_hash) == (5, "0xh5", "0xh4")


async def test_get_block_missing_returns_none(client):
    client._session = _session(get=_mock_response(status=404))
    assert await client.get_block(99) is None


async def test_get_logs_passes_range(client):
    logs = [{"event": "Registered", "block_number": 3}]
    client._session = _session(get=_mock_response(json_body={"logs": logs}))

    assert await client.get_logs(3, 4) == logs
    assert client._session.get.call_args[1]["params"] == {"from_block": "3", "to_block": "4"}


# --- Error mapping ---

@pytest.mark.parametrize("status", [429, 500, 503])
async def test_throttling_and_server_errors_are_transient(client, status):
    client._session = _session(get=_mock_response(status=status, json_body={"error": "busy"}))
    with pytest.raises(TransientChainError):
        await client.get_block_number()


async def test_client_errors_are_rejections_with_reason(client):
    client._session = _session(post=_mock_response(
        status=400, json_body={"error": "credential expired", "reason": "stale_authorization"}
    ))
    with pytest.raises(RejectedWriteError) as exc_info:
        await client.give_feedback(42, 90, "pass", "task", "sha256://f", "0xf", {})
    assert exc_info.value.reason == "stale_authorization"
    assert "credential expired" in exc_info.value.message


async def test_connection_errors_are_transient(client):
    client._session = _session(get=MagicMock(side_effect=aiohttp.ClientConnectionError("refused")))
    with pytest.raises(TransientChainError):
        await client.get_logs(0, 1)


async def test_timeouts_are_transient(client):
    client._session = _session(get=MagicMock(side_effect=asyncio.TimeoutError()))
    with pytest.raises(TransientChainError):
        await client.get_block_number()


# --- Writes ---

async def test_write_sends_account_and_parses_receipt(client):
    client._session = _session(post=_mock_response(json_body={
        "tx_hash": "0xtx", "block_number": "12", "block_hash": "0xb12", "value": 3,
    }))

    receipt = await client.give_feedback(42, 90, "pass", "task", "sha256://f", "0xf", {"signature": "ab"})

    assert (receipt.tx_hash, receipt.block_number, receipt.value) == ("0xtx", 12, 3)
    call_args = client._session.post.call_args
    assert call_args[0][0] == "/api/v1/reputation/feedback"
    payload = call_args[1]["json"]
    assert payload["from"] == ACCOUNT.lower()
    assert payload["credential"] == {"signature": "ab"}
    assert payload["tag1"] == "pass"


async def test_register_hex_encodes_metadata(client):
    client._session = _session(post=_mock_response(json_body={
        "tx_hash": "0xtx", "block_number": 1, "block_hash": "0xb1", "value": 42,
    }))
    receipt = await client.register("ipfs://card", [("name", b"hi")])

    assert receipt.value == 42
    payload = client._session.post.call_args[1]["json"]
    assert payload["metadata"] == [{"key": "name", "value": "0x6869"}]


async def test_malformed_receipt_is_transient(client):
    client._session = _session(post=_mock_response(json_body={"tx_hash": "0xtx"}))
    with pytest.raises(TransientChainError):
        await client.revoke_feedback(42, 0)


async def test_validation_request_lowercases_validator(client):
    client._session = _session(post=_mock_response(json_body={
        "tx_hash": "0xtx", "block_number": 2, "block_hash": "0xb2", "value": "0xreq",
    }))
    await client.validation_request("0xABC", 42, "sha256://r", "0xc")
    assert client._session.post.call_args[1]["json"]["validator"] == "0xabc"


async def test_get_metadata_decodes_hex(client):
    client._session = _session(get=_mock_response(json_body={"value": "0x6869"}))
    assert await client.get_metadata(42, "name") == b"hi"


# --- Subscription ---

async def test_subscribe_yields_new_heads(client):
    client.get_block_number = AsyncMock(side_effect=[1, 1, 2])
    client.get_block = AsyncMock(side_effect=lambda n: MagicMock(number=n))

    heads = client.subscribe(poll_interval=0)
    first = await heads.__anext__()
    second = await heads.__anext__()
    await heads.aclose()

    assert (first.number, second.number) == (1, 2)


async def test_close_closes_session(client):
    session = _session()
    client._session = session
    await client.close()
    session.close.assert_awaited_once()
