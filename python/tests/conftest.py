"""Shared fixtures: an in-process ledger, a read model and a wired orchestrator."""

from dataclasses import dataclass

import pytest

from agentledger.audit.trail import AuditTrail
from agentledger.chain.local_ledger import LocalLedger, LocalLedgerClient
from agentledger.evidence.local_store import LocalEvidenceStore
from agentledger.exceptions import RetryConfig
from agentledger.indexer.event_indexer import EventIndexer
from agentledger.indexer.store import SqliteReadModel
from agentledger.orchestration.notifications import OutcomeRouter
from agentledger.orchestration.orchestrator import TaskOrchestrator
from agentledger.orchestration.task_store import TaskStore
from agentledger.orchestration.writer import ChainWriter
from agentledger.reputation.authorization import LocalCredentialIssuer, generate_owner_key
from agentledger.reputation.scorer import ReputationScorer
from agentledger.validation.aggregator import AggregationPolicy

CI_VALIDATOR = "0x" + "a1" * 20
SECURITY_VALIDATOR = "0x" + "b2" * 20
CLIENT = "0x" + "c3" * 20


def fast_retry(max_retries: int = 3) -> RetryConfig:
    return RetryConfig(max_retries=max_retries, initial_delay_ms=1, max_delay_ms=2, jitter=False)


class Clock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def ledger():
    return LocalLedger(chain_id=1, first_agent_id=42)


@pytest.fixture
def owner_key():
    return generate_owner_key()


@pytest.fixture
def owner(ledger, owner_key) -> LocalLedgerClient:
    return ledger.client(owner_key[1])


@pytest.fixture
def read_model(tmp_path):
    return SqliteReadModel(tmp_path / "read_model.db", max_reorg_depth=16)


@pytest.fixture
def indexer(ledger, owner, read_model):
    return EventIndexer(owner, read_model, batch_size=4, max_reorg_depth=16, retry_config=fast_retry())


@dataclass
class Harness:
    ledger: LocalLedger
    owner: LocalLedgerClient
    client: LocalLedgerClient
    read_model: SqliteReadModel
    indexer: EventIndexer
    evidence: LocalEvidenceStore
    audit: AuditTrail
    store: TaskStore
    scorer: ReputationScorer
    router: OutcomeRouter
    orchestrator: TaskOrchestrator
    clock: Clock

    def validator(self, address: str = CI_VALIDATOR) -> LocalLedgerClient:
        return self.ledger.client(address)

    async def sync(self) -> int:
        return await self.indexer.sync_once()

    async def register_agent(self, token_uri: str = "ipfs://agent-card") -> int:
        receipt = await self.owner.register(token_uri, [("name", b"builder")])
        await self.sync()
        return receipt.value


def build_harness(tmp_path, ledger, owner_key, validators=(CI_VALIDATOR,), policy=None, clock=None,
                  confirmations=0) -> Harness:
    signing_key, owner_address = owner_key
    clock = clock or Clock()
    owner = ledger.client(owner_address)
    client = ledger.client(CLIENT)
    read_model = SqliteReadModel(tmp_path / "read_model.db", max_reorg_depth=16)
    indexer = EventIndexer(
        owner, read_model, confirmations=confirmations, batch_size=8, max_reorg_depth=16, retry_config=fast_retry()
    )
    evidence = LocalEvidenceStore(tmp_path / "evidence")
    audit = AuditTrail(tmp_path / "audit.db")
    store = TaskStore(tmp_path / "tasks.db")
    writer = ChainWriter(audit, fast_retry())
    issuer = LocalCredentialIssuer(chain_id=ledger.chain_id, ttl=3600)
    issuer.add_key(signing_key)
    scorer = ReputationScorer(client, read_model, evidence, issuer, writer)
    router = OutcomeRouter()
    orchestrator = TaskOrchestrator(
        owner,
        read_model,
        evidence,
        store,
        writer,
        scorer,
        policy or AggregationPolicy(required_validators=frozenset(validators), threshold=80.0, timeout_seconds=600),
        validators=validators,
        router=router,
        poll_interval=0.01,
        clock=clock,
        confirmations=confirmations,
    )
    return Harness(
        ledger=ledger,
        owner=owner,
        client=client,
        read_model=read_model,
        indexer=indexer,
        evidence=evidence,
        audit=audit,
        store=store,
        scorer=scorer,
        router=router,
        orchestrator=orchestrator,
        clock=clock,
    )


@pytest.fixture
def harness(tmp_path, ledger, owner_key) -> Harness:
    return build_harness(tmp_path, ledger, owner_key)
