"""Service container for agentledger.

Wires the indexer, orchestrator and their collaborators from Settings.
Services are created on first access; collaborators owned by the
deployment (chain clients, evidence gateway, credential issuer) may be
injected instead.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from agentledger.config.settings import Settings, get_settings
from agentledger.exceptions import RetryConfig
from agentledger.logging_utils import configure_logging

logger = logging.getLogger(__name__)


class LedgerService:
    """Central service container."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        chain_client=None,
        feedback_client=None,
        evidence=None,
        issuer=None,
    ) -> None:
        self.settings = settings or get_settings()
        self._chain_client = chain_client
        self._feedback_client = feedback_client
        self._evidence = evidence
        self._issuer = issuer
        self._read_model = None
        self._task_store = None
        self._audit = None
        self._indexer = None
        self._writer = None
        self._scorer = None
        self._router = None
        self._orchestrator = None
        self._rubric = None

    # --- Retry budgets ---

    def _retry(self, max_retries: int) -> RetryConfig:
        return RetryConfig(
            max_retries=max_retries,
            initial_delay_ms=self.settings.retry_initial_delay_ms,
            max_delay_ms=self.settings.retry_max_delay_ms,
        )

    # --- Collaborators ---

    @property
    def chain_client(self):
        if self._chain_client is None:
            from agentledger.chain.gateway_client import GatewayChainClient
            self._chain_client = GatewayChainClient(
                base_url=self.settings.chain_gateway_url,
                account=self.settings.chain_account,
                auth_token=self.settings.chain_auth_token,
                timeout=self.settings.chain_request_timeout,
            )
        return self._chain_client

    @property
    def feedback_client(self):
        if self._feedback_client is None:
            from agentledger.chain.gateway_client import GatewayChainClient
            self._feedback_client = GatewayChainClient(
                base_url=self.settings.chain_gateway_url,
                account=self.settings.feedback_account,
                auth_token=self.settings.chain_auth_token,
                timeout=self.settings.chain_request_timeout,
            )
        return self._feedback_client

    @property
    def evidence(self):
        if self._evidence is None:
            if self.settings.evidence_gateway_url:
                from agentledger.evidence.http_gateway import HttpEvidenceGateway
                self._evidence = HttpEvidenceGateway(
                    self.settings.evidence_gateway_url,
                    auth_token=self.settings.chain_auth_token,
                )
            else:
                from agentledger.evidence.local_store import LocalEvidenceStore
                self._evidence = LocalEvidenceStore(self.settings.evidence_dir)
        return self._evidence

    @property
    def issuer(self):
        if self._issuer is None:
            from agentledger.reputation.authorization import LocalCredentialIssuer
            self._issuer = LocalCredentialIssuer(
                chain_id=self.settings.chain_id, ttl=self.settings.credential_ttl
            )
        return self._issuer

    # --- Storage ---

    @property
    def read_model(self):
        if self._read_model is None:
            from agentledger.indexer.store import SqliteReadModel
            self._read_model = SqliteReadModel(
                self.settings.read_model_path, max_reorg_depth=self.settings.max_reorg_depth
            )
        return self._read_model

    @property
    def task_store(self):
        if self._task_store is None:
            from agentledger.orchestration.task_store import TaskStore
            self._task_store = TaskStore(self.settings.task_store_path)
        return self._task_store

    @property
    def audit(self):
        if self._audit is None:
            from agentledger.audit.trail import AuditTrail
            self._audit = AuditTrail(self.settings.audit_path)
        return self._audit

    # --- Components ---

    @property
    def indexer(self):
        if self._indexer is None:
            from agentledger.indexer.event_indexer import EventIndexer
            self._indexer = EventIndexer(
                self.chain_client,
                self.read_model,
                start_block=self.settings.start_block,
                confirmations=self.settings.confirmations,
                batch_size=self.settings.batch_size,
                max_reorg_depth=self.settings.max_reorg_depth,
                poll_interval=self.settings.poll_interval,
                retry_config=self._retry(self.settings.read_max_retries),
            )
        return self._indexer

    @property
    def writer(self):
        if self._writer is None:
            from agentledger.orchestration.writer import ChainWriter
            self._writer = ChainWriter(self.audit, self._retry(self.settings.write_max_retries))
        return self._writer

    @property
    def rubric(self):
        if self._rubric is None:
            from agentledger.reputation.rubric import ScoringRubric
            if self.settings.rubric_path:
                self._rubric = ScoringRubric.from_file(self.settings.rubric_path)
            else:
                self._rubric = ScoringRubric()
        return self._rubric

    @property
    def scorer(self):
        if self._scorer is None:
            from agentledger.reputation.scorer import ReputationScorer
            self._scorer = ReputationScorer(
                self.feedback_client,
                self.read_model,
                self.evidence,
                self.issuer,
                self.writer,
                rubric=self.rubric,
            )
        return self._scorer

    @property
    def router(self):
        if self._router is None:
            from agentledger.orchestration.notifications import OutcomeRouter
            self._router = OutcomeRouter()
        return self._router

    @property
    def orchestrator(self):
        if self._orchestrator is None:
            from agentledger.orchestration.orchestrator import TaskOrchestrator
            from agentledger.validation.aggregator import AggregationPolicy
            self._orchestrator = TaskOrchestrator(
                self.chain_client,
                self.read_model,
                self.evidence,
                self.task_store,
                self.writer,
                self.scorer,
                AggregationPolicy.from_settings(self.settings),
                validators=self.settings.validators,
                router=self.router,
                poll_interval=self.settings.task_poll_interval,
                max_concurrent_tasks=self.settings.max_concurrent_tasks,
                confirmations=self.settings.confirmations,
            )
        return self._orchestrator

    def status(self) -> Dict[str, Any]:
        """Which services have been initialized."""
        return {
            "read_model": self._read_model is not None,
            "task_store": self._task_store is not None,
            "audit": self._audit is not None,
            "indexer": self._indexer is not None,
            "orchestrator": self._orchestrator is not None,
        }

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the indexer and drive active and newly submitted tasks until ``stop_event``."""
        configure_logging(self.settings.log_level, self.settings.log_format, self.settings.log_file)
        self.settings.ensure_directories()
        stop = stop_event or asyncio.Event()
        logger.info("agentledger starting (%s)", self.settings.environment)
        await asyncio.gather(self.indexer.run(stop), self.orchestrator.resume(stop))

    async def close(self) -> None:
        for client in (self._chain_client, self._feedback_client, self._evidence):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


_service: Optional[LedgerService] = None


def get_service() -> LedgerService:
    global _service
    if _service is None:
        _service = LedgerService()
        logger.info("LedgerService created")
    return _service


async def shutdown_service() -> None:
    global _service
    if _service is not None:
        await _service.close()
        _service = None
