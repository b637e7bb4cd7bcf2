"""Tests for the evidence stores (local filesystem and HTTP gateway).

The HTTP gateway is exercised against mocked aiohttp sessions.
"""

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock
from aiohttp import ClientSession

from agentledger.chain.identifiers import content_hash
from agentledger.evidence.http_gateway import HttpEvidenceGateway
from agentledger.evidence.local_store import LocalEvidenceStore
from agentledger.exceptions import EvidenceError, EvidenceIntegrityError, EvidenceNotFoundError


def _mock_response(status=200, json_body=None, body=b""):
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.json = AsyncMock(return_value=json_body)
    mock_resp.read = AsyncMock(return_value=body)
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)
    return mock_resp


def _mock_session(**methods):
    mock_session = AsyncMock(spec=ClientSession)
    for name, value in methods.items():
        setattr(mock_session, name, value)
    mock_session.closed = False
    return mock_session


@pytest.fixture
def local(tmp_path):
    return LocalEvidenceStore(tmp_path / "evidence")


@pytest.fixture
def gateway():
    return HttpEvidenceGateway(base_url="http://127.0.0.1:9480/")


# --- Local store ---

async def test_local_store_is_content_addressed(local):
    first = await local.store(b"report")
    second = await local.store(b"report")

    assert first == second
    assert first.uri.startswith("sha256://")
    assert first.content_hash == content_hash(b"report")
    assert await local.fetch(first.uri) == b"report"


async def test_local_fetch_verified_checks_locator_hash(local, tmp_path):
    stored = await local.store(b"report")
    digest = stored.uri[len("sha256://"):]
    (tmp_path / "evidence" / digest[:2] / digest).write_bytes(b"tampered")

    with pytest.raises(EvidenceIntegrityError):
        await local.fetch_verified(stored.uri)


async def test_local_fetch_verified_with_wrong_expected_hash(local):
    stored = await local.store(b"report")
    with pytest.raises(EvidenceIntegrityError):
        await local.fetch_verified(stored.uri, content_hash(b"other"))


async def test_local_missing_blob(local):
    with pytest.raises(EvidenceNotFoundError):
        await local.fetch("sha256://" + "0" * 64)


async def test_local_rejects_foreign_locator(local):
    with pytest.raises(EvidenceError):
        await local.fetch("ipfs://bafy")


# --- HTTP gateway ---

async def test_gateway_store_posts_bytes(gateway):
    mock_resp = _mock_response(status=201, json_body={"uri": "ipfs://bafy", "content_hash": "0xabc"})
    gateway._session = _mock_session(post=MagicMock(return_value=mock_resp))

    stored = await gateway.store(b"payload")

    assert stored.uri == "ipfs://bafy"
    assert stored.content_hash == "0xabc"
    call_args = gateway._session.post.call_args
    assert call_args[0][0] == "/api/v1/blobs"
    assert call_args[1]["data"] == b"payload"


async def test_gateway_store_http_error(gateway):
    gateway._session = _mock_session(post=MagicMock(return_value=_mock_response(status=500)))
    with pytest.raises(EvidenceError):
        await gateway.store(b"payload")


async def test_gateway_fetch_verified(gateway):
    mock_resp = _mock_response(body=b"payload")
    gateway._session = _mock_session(get=MagicMock(return_value=mock_resp))

    assert await gateway.fetch_verified("ipfs://bafy", content_hash(b"payload")) == b"payload"
    assert gateway._session.get.call_args[1]["params"] == {"uri": "ipfs://bafy"}


async def test_gateway_fetch_hash_mismatch(gateway):
    gateway._session = _mock_session(get=MagicMock(return_value=_mock_response(body=b"evil")))
    with pytest.raises(EvidenceIntegrityError):
        await gateway.fetch_verified("ipfs://bafy", content_hash(b"payload"))


async def test_gateway_fetch_not_found(gateway):
    gateway._session = _mock_session(get=MagicMock(return_value=_mock_response(status=404)))
    with pytest.raises(EvidenceNotFoundError):
        await gateway.fetch("ipfs://missing")


async def test_gateway_unreachable(gateway):
    gateway._session = _mock_session(get=MagicMock(side_effect=aiohttp.ClientConnectionError("refused")))
    with pytest.raises(EvidenceError):
        await gateway.fetch("ipfs://bafy")


async def test_gateway_base_url_trailing_slash(gateway):
    assert gateway.base_url == "http://127.0.0.1:9480"
