"""agentledger: off-chain projection and workflow orchestration for agent registries."""

__version__ = "0.3.0"
