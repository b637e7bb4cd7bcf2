"""
agentledger configuration, read from the environment (and an optional .env).

Every field can be overridden with an ``AGENTLEDGER_``-prefixed environment
variable, e.g. ``AGENTLEDGER_CONFIRMATIONS=12``.
"""
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Indexer, orchestrator and gateway settings."""

    model_config = SettingsConfigDict(
        env_prefix="AGENTLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = Field(default="agentledger", description="Application name")
    environment: str = Field(default="development", description="Environment: development, staging, production")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    # Storage
    data_dir: str = Field(default="./data", description="Data directory")
    read_model_path: str = Field(default="./data/read_model.db", description="Read model SQLite path")
    task_store_path: str = Field(default="./data/tasks.db", description="Orchestrator task store SQLite path")
    audit_path: str = Field(default="./data/audit.db", description="Write audit trail SQLite path")
    evidence_dir: str = Field(default="./data/evidence", description="Local evidence blob directory")
    evidence_gateway_url: Optional[str] = Field(default=None, description="HTTP evidence gateway; local store when unset")

    # Chain gateway
    chain_gateway_url: str = Field(default="http://127.0.0.1:8545", description="Registry gateway base URL")
    chain_account: str = Field(default="", description="Address the gateway signs writes for")
    feedback_account: str = Field(default="", description="Client address used for feedback writes")
    chain_auth_token: Optional[str] = Field(default=None, description="Bearer token for the gateway")
    chain_request_timeout: float = Field(default=30.0, gt=0, description="Gateway request timeout in seconds")
    chain_id: int = Field(default=1, ge=1, description="Chain id bound into credentials")

    # Indexer
    start_block: int = Field(default=0, ge=0, description="First block to index")
    confirmations: int = Field(default=0, ge=0, description="Blocks to lag behind head")
    batch_size: int = Field(default=100, ge=1, le=10000, description="Blocks fetched per range")
    max_reorg_depth: int = Field(default=128, ge=1, description="Block hash window kept for ancestor search")
    poll_interval: float = Field(default=2.0, gt=0, description="Head poll interval in seconds")

    # Retry budgets
    write_max_retries: int = Field(default=4, ge=0, description="Retries for transient write failures")
    read_max_retries: int = Field(default=5, ge=0, description="Retries for transient read failures")
    retry_initial_delay_ms: int = Field(default=200, ge=1, description="First backoff delay")
    retry_max_delay_ms: int = Field(default=15000, ge=1, description="Backoff ceiling")

    # Validation
    validators: List[str] = Field(default_factory=list, description="Validator addresses requested per task")
    required_validators: List[str] = Field(default_factory=list, description="Validators that must respond; empty = any")
    score_threshold: float = Field(default=80.0, ge=0.0, le=100.0, description="Mean score needed to pass")
    min_response_fraction: float = Field(default=0.5, ge=0.0, le=1.0, description="Quorum at timeout")
    aggregation_timeout: float = Field(default=3600.0, gt=0, description="Seconds to wait for validators")
    require_all_required: bool = Field(default=False, description="Fail at timeout when a required validator is missing")

    # Reputation
    rubric_path: Optional[str] = Field(default=None, description="YAML/JSON scoring rubric; defaults when unset")
    credential_ttl: int = Field(default=3600, ge=1, description="Feedback credential lifetime in seconds")

    # Orchestrator
    max_concurrent_tasks: int = Field(default=32, ge=1, le=1024, description="Tasks advanced concurrently")
    task_poll_interval: float = Field(default=1.0, gt=0, description="Read model poll interval per task")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Deployment stage, logged at startup."""
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Standard logging level name, normalized to upper case."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """text for humans, json for log shippers."""
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("validators", "required_validators")
    @classmethod
    def normalize_addresses(cls, v: List[str]) -> List[str]:
        return [a.strip().lower() for a in v if a and a.strip()]

    def ensure_directories(self) -> None:
        """Create the data, evidence and database directories."""
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        Path(self.evidence_dir).mkdir(parents=True, exist_ok=True)
        for db_path in (self.read_model_path, self.task_store_path, self.audit_path):
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()
