"""
Feedback authorization credentials.

An agent owner pre-authorizes a client to leave feedback by signing a
credential bound to (agent id, client, chain id) with an index limit and an
expiry. The registry accepts feedback only while the pair's next feedback index
is below the limit and the credential has not expired.

Ed25519 via PyNaCl. The owner address is derived from the signing public key,
so a credential proves both possession of the key and ownership of the agent.

Usage:
    signing_key, owner = generate_owner_key()
    issuer = LocalCredentialIssuer(chain_id=1)
    issuer.add_key(signing_key)

    credential = await issuer.issue(agent_id=42, client="0xabc...", owner=owner, index_limit=1)
    check_credential(credential, next_index=0)
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from agentledger.chain.identifiers import canonical_json
from agentledger.exceptions import InvalidCredentialError, StaleAuthorization

logger = logging.getLogger(__name__)


# =============================================================================
# KEYS
# =============================================================================

def address_from_public_key(public_key_hex: str) -> str:
    """Account address for an Ed25519 public key (last 20 bytes of its sha256)."""
    digest = hashlib.sha256(bytes.fromhex(public_key_hex)).hexdigest()
    return "0x" + digest[-40:]


def generate_owner_key() -> Tuple[SigningKey, str]:
    """New signing key and the owner address it controls."""
    signing_key = SigningKey.generate()
    public_key_hex = signing_key.verify_key.encode(encoder=HexEncoder).decode()
    return signing_key, address_from_public_key(public_key_hex)


# =============================================================================
# CREDENTIAL
# =============================================================================

@dataclass(frozen=True)
class FeedbackAuthorization:
    """Signed permission for ``client`` to rate ``agent_id``."""
    agent_id: int
    client: str
    index_limit: int
    expiry: int
    chain_id: int
    signer: str
    public_key: str
    signature: str = ""

    def signing_message(self) -> bytes:
        return canonical_json({
            "agent_id": self.agent_id,
            "client": self.client.lower(),
            "index_limit": self.index_limit,
            "expiry": self.expiry,
            "chain_id": self.chain_id,
            "signer": self.signer.lower(),
        })

    @property
    def reference(self) -> str:
        """Stable credential reference recorded with the feedback."""
        return "0x" + hashlib.sha256(self.signing_message() + bytes.fromhex(self.signature)).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackAuthorization":
        try:
            return cls(
                agent_id=int(data["agent_id"]),
                client=str(data["client"]).lower(),
                index_limit=int(data["index_limit"]),
                expiry=int(data["expiry"]),
                chain_id=int(data["chain_id"]),
                signer=str(data["signer"]).lower(),
                public_key=str(data["public_key"]),
                signature=str(data.get("signature", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidCredentialError(f"Malformed credential: {exc}") from exc

    def verify_signature(self) -> None:
        """Raise InvalidCredentialError unless signed by ``signer``'s key."""
        try:
            if address_from_public_key(self.public_key) != self.signer.lower():
                raise InvalidCredentialError("Credential public key does not match signer address")
            verify_key = VerifyKey(self.public_key.encode(), encoder=HexEncoder)
            verify_key.verify(self.signing_message(), bytes.fromhex(self.signature))
        except (BadSignatureError, ValueError, TypeError) as exc:
            raise InvalidCredentialError(f"Credential signature does not verify: {exc}") from exc

    def check(
        self,
        agent_id: int,
        client: str,
        owner: str,
        chain_id: int,
        next_index: int,
        now: Optional[float] = None,
    ) -> None:
        """Full registry-side acceptance check."""
        if self.agent_id != agent_id or self.client != client.lower() or self.chain_id != chain_id:
            raise InvalidCredentialError(
                f"Credential bound to ({self.agent_id}, {self.client}, chain {self.chain_id}), "
                f"used for ({agent_id}, {client.lower()}, chain {chain_id})"
            )
        if self.signer != owner.lower():
            raise InvalidCredentialError(f"Credential signer {self.signer} is not the agent owner")
        self.verify_signature()
        check_credential(self, next_index, now)


def check_credential(credential: FeedbackAuthorization, next_index: int, now: Optional[float] = None) -> None:
    """
    Refuse a credential that can no longer be used.

    Raises:
        StaleAuthorization: next_index >= index_limit, or expiry has passed.
    """
    now = time.time() if now is None else now
    if next_index >= credential.index_limit:
        raise StaleAuthorization(
            f"Next feedback index {next_index} reached credential limit {credential.index_limit}",
            details={"agent_id": credential.agent_id, "client": credential.client,
                     "next_index": next_index, "index_limit": credential.index_limit},
        )
    if credential.expiry <= now:
        raise StaleAuthorization(
            f"Credential expired at {credential.expiry}",
            details={"agent_id": credential.agent_id, "client": credential.client,
                     "expiry": credential.expiry},
        )


# =============================================================================
# ISSUERS
# =============================================================================

class ICredentialIssuer(Protocol):
    """Source of owner-signed feedback credentials (key custody lives here)."""

    async def issue(self, agent_id: int, client: str, owner: str, index_limit: int) -> FeedbackAuthorization:
        ...


class LocalCredentialIssuer:
    """Signs credentials with owner keys held in memory."""

    def __init__(self, chain_id: int, ttl: int = 3600, clock: Callable[[], float] = time.time):
        self.chain_id = chain_id
        self.ttl = ttl
        self._clock = clock
        self._keys: Dict[str, SigningKey] = {}

    def add_key(self, signing_key: SigningKey) -> str:
        public_key_hex = signing_key.verify_key.encode(encoder=HexEncoder).decode()
        address = address_from_public_key(public_key_hex)
        self._keys[address] = signing_key
        return address

    def sign(self, credential: FeedbackAuthorization) -> FeedbackAuthorization:
        signing_key = self._keys.get(credential.signer)
        if signing_key is None:
            raise InvalidCredentialError(f"No signing key held for {credential.signer}")
        signature = signing_key.sign(credential.signing_message()).signature.hex()
        return FeedbackAuthorization(**{**credential.to_dict(), "signature": signature})

    async def issue(self, agent_id: int, client: str, owner: str, index_limit: int) -> FeedbackAuthorization:
        owner = owner.lower()
        signing_key = self._keys.get(owner)
        if signing_key is None:
            raise InvalidCredentialError(f"No signing key held for owner {owner}")
        unsigned = FeedbackAuthorization(
            agent_id=agent_id,
            client=client.lower(),
            index_limit=index_limit,
            expiry=int(self._clock()) + self.ttl,
            chain_id=self.chain_id,
            signer=owner,
            public_key=signing_key.verify_key.encode(encoder=HexEncoder).decode(),
        )
        logger.debug("Issuing credential for agent %s client %s limit %d", agent_id, client, index_limit)
        return self.sign(unsigned)
