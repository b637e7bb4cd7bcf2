"""
Registry gateway client - IChainClient over a JSON HTTP API.

The gateway fronts a node and a signer for one account and exposes:

    GET  /api/v1/blocks/latest                       -> {"number": n}
    GET  /api/v1/blocks/{n}                          -> block header | 404
    GET  /api/v1/logs?from_block=a&to_block=b        -> {"logs": [...]}
    POST /api/v1/identity/register                   -> write receipt
    POST /api/v1/identity/metadata                   -> write receipt
    GET  /api/v1/identity/{id}/token_uri             -> {"token_uri": ...}
    GET  /api/v1/identity/{id}/metadata/{key}        -> {"value": "0x.."}
    POST /api/v1/validation/requests                 -> write receipt
    POST /api/v1/validation/responses                -> write receipt
    GET  /api/v1/validation/requests/{hash}          -> status
    POST /api/v1/reputation/feedback                 -> write receipt
    POST /api/v1/reputation/feedback/revoke          -> write receipt
    POST /api/v1/reputation/feedback/responses       -> write receipt

Error mapping: connection errors, timeouts, 429 and 5xx are
TransientChainError; other 4xx are RejectedWriteError carrying the gateway's
``reason``.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiohttp

from agentledger.chain.events import BlockHeader
from agentledger.exceptions import RejectedWriteError, TransientChainError
from agentledger.interfaces.chain import WriteReceipt

logger = logging.getLogger(__name__)

GATEWAY_BASE = "http://127.0.0.1:8545"


class GatewayChainClient:
    """Async HTTP client for the registry gateway."""

    def __init__(
        self,
        base_url: str = GATEWAY_BASE,
        account: str = "",
        auth_token: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._account = account.lower()
        self.auth_token = auth_token
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def account(self) -> str:
        return self._account

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.auth_token:
                headers["Authorization"] = f"Bearer {self.auth_token}"
            self._session = aiohttp.ClientSession(
                base_url=self.base_url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    # --- Transport ---

    @staticmethod
    async def _error_body(resp) -> Dict[str, Any]:
        try:
            body = await resp.json()
        except (aiohttp.ContentTypeError, ValueError):
            return {}
        return body if isinstance(body, dict) else {}

    async def _check(self, resp, what: str) -> None:
        if resp.status < 400:
            return
        body = await self._error_body(resp)
        message = body.get("error") or body.get("message") or f"HTTP {resp.status}"
        if resp.status == 429 or resp.status >= 500:
            raise TransientChainError(f"{what}: {message}", details={"status": resp.status})
        raise RejectedWriteError(
            f"{what}: {message}",
            reason=body.get("reason", "rejected"),
            details={"status": resp.status},
        )

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, allow_missing: bool = False) -> Any:
        session = await self._get_session()
        try:
            async with session.get(path, params=params) as resp:
                if allow_missing and resp.status == 404:
                    return None
                await self._check(resp, f"GET {path}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientChainError(f"GET {path} failed: {exc!r}") from exc

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(path, json=payload) as resp:
                await self._check(resp, f"POST {path}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientChainError(f"POST {path} failed: {exc!r}") from exc

    async def _write(self, path: str, payload: Dict[str, Any]) -> WriteReceipt:
        body = await self._post(path, {"from": self._account, **payload})
        try:
            return WriteReceipt(
                tx_hash=body["tx_hash"],
                block_number=int(body["block_number"]),
                block_hash=body["block_hash"],
                value=body.get("value"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TransientChainError(f"Malformed receipt from {path}: {exc}") from exc

    # --- Event feed ---

    async def get_block_number(self) -> int:
        body = await self._get("/api/v1/blocks/latest")
        return int(body["number"])

    async def get_block(self, number: int) -> Optional[BlockHeader]:
        body = await self._get(f"/api/v1/blocks/{number}", allow_missing=True)
        if body is None:
            return None
        return BlockHeader.from_dict(body)

    async def get_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        body = await self._get("/api/v1/logs", params={"from_block": str(from_block), "to_block": str(to_block)})
        return list(body.get("logs", []))

    async def subscribe(self, poll_interval: float = 2.0) -> AsyncIterator[BlockHeader]:
        last: Optional[int] = None
        while True:
            try:
                number = await self.get_block_number()
                if last is None or number != last:
                    header = await self.get_block(number)
                    if header is not None:
                        last = number
                        yield header
            except TransientChainError as exc:
                logger.warning("Head poll failed: %s", exc.message)
            await asyncio.sleep(poll_interval)

    # --- Identity registry ---

    async def register(self, token_uri: str, metadata: Sequence[Tuple[str, bytes]] = ()) -> WriteReceipt:
        return await self._write("/api/v1/identity/register", {
            "token_uri": token_uri,
            "metadata": [{"key": k, "value": "0x" + bytes(v).hex()} for k, v in metadata],
        })

    async def set_metadata(self, agent_id: int, key: str, value: bytes) -> WriteReceipt:
        return await self._write("/api/v1/identity/metadata", {
            "agent_id": agent_id, "key": key, "value": "0x" + bytes(value).hex(),
        })

    async def token_uri(self, agent_id: int) -> str:
        body = await self._get(f"/api/v1/identity/{agent_id}/token_uri")
        return body["token_uri"]

    async def get_metadata(self, agent_id: int, key: str) -> bytes:
        body = await self._get(f"/api/v1/identity/{agent_id}/metadata/{key}")
        value = body.get("value") or ""
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)

    # --- Validation registry ---

    async def validation_request(
        self, validator: str, agent_id: int, request_uri: str, content_hash: str
    ) -> WriteReceipt:
        return await self._write("/api/v1/validation/requests", {
            "validator": validator.lower(),
            "agent_id": agent_id,
            "request_uri": request_uri,
            "content_hash": content_hash,
        })

    async def validation_response(
        self, request_hash: str, score: int, response_uri: str, response_hash: str, tag: str
    ) -> WriteReceipt:
        return await self._write("/api/v1/validation/responses", {
            "request_hash": request_hash,
            "score": score,
            "response_uri": response_uri,
            "response_hash": response_hash,
            "tag": tag,
        })

    async def get_validation_status(self, request_hash: str) -> Dict[str, Any]:
        return await self._get(f"/api/v1/validation/requests/{request_hash}")

    # --- Reputation registry ---

    async def give_feedback(
        self,
        agent_id: int,
        score: int,
        tag1: str,
        tag2: str,
        file_uri: str,
        file_hash: str,
        credential: Dict[str, Any],
    ) -> WriteReceipt:
        return await self._write("/api/v1/reputation/feedback", {
            "agent_id": agent_id,
            "score": score,
            "tag1": tag1,
            "tag2": tag2,
            "file_uri": file_uri,
            "file_hash": file_hash,
            "credential": credential,
        })

    async def revoke_feedback(self, agent_id: int, feedback_index: int) -> WriteReceipt:
        return await self._write("/api/v1/reputation/feedback/revoke", {
            "agent_id": agent_id, "feedback_index": feedback_index,
        })

    async def append_response(
        self, agent_id: int, client: str, feedback_index: int, response_uri: str, response_hash: str
    ) -> WriteReceipt:
        return await self._write("/api/v1/reputation/feedback/responses", {
            "agent_id": agent_id,
            "client": client.lower(),
            "feedback_index": feedback_index,
            "response_uri": response_uri,
            "response_hash": response_hash,
        })
