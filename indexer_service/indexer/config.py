"""
Process configuration.

Everything is read from the environment once at start-up into a frozen
``IngestSettings``; nothing mutates it afterwards. ``indexer.cli`` builds the
same object and lets command-line flags override individual fields.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from indexer.errors import ConfigError

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_DB_PATH = Path(__file__).parent.parent / "transactions.db"


@dataclass(frozen=True)
class IngestSettings:
    """Immutable ingestion settings.

    Attributes:
        rpc_url: Solana JSON-RPC endpoint.
        rpc_timeout_seconds: HTTP timeout per RPC call.
        database_path: SQLite file holding transactions and checkpoints.
        db_reset_on_start: Drop all tables before creating the schema.
        stream_key: Checkpoint key owned by this ingestion stream.
        start_slot: First slot of a stream with no persisted checkpoint.
        end_slot: Optional inclusive last slot (sharded streams stop there).
        tx_limit: Maximum transactions stored per slot.
        root_lag: Slots kept behind the latest finalized slot.
        rate_limit_per_second: RPC call budget; ``0`` disables pacing.
        fetch_max_attempts: Fetch attempts per slot before giving up.
        persist_max_attempts: Batch write attempts per slot before giving up.
        backoff_base_seconds: First retry delay.
        backoff_max_seconds: Retry delay cap.
        rate_limit_cooldown_seconds: Sleep after rate-limit retries run out.
        tip_poll_interval_seconds: Wait when the stream has caught up.
        ingestion_enabled: Run the loop inside the API process.
        metrics_port: Prometheus port of the ingestion-only worker.
    """

    rpc_url: str = DEFAULT_RPC_URL
    rpc_timeout_seconds: float = 30.0
    database_path: Path = DEFAULT_DB_PATH
    db_reset_on_start: bool = False
    stream_key: str = "default"
    start_slot: int = 0
    end_slot: Optional[int] = None
    tx_limit: int = 1000
    root_lag: int = 100
    rate_limit_per_second: float = 5.0
    fetch_max_attempts: int = 5
    persist_max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    rate_limit_cooldown_seconds: float = 60.0
    tip_poll_interval_seconds: float = 2.0
    ingestion_enabled: bool = False
    metrics_port: int = 8001

    def __post_init__(self):
        self.validate()

    @property
    def min_fetch_interval(self) -> float:
        """Seconds between successive RPC calls derived from the rate budget."""
        if self.rate_limit_per_second <= 0:
            return 0.0
        return 1.0 / self.rate_limit_per_second

    def validate(self) -> None:
        if not self.rpc_url:
            raise ConfigError("RPC_URL must not be empty")
        if not self.stream_key:
            raise ConfigError("STREAM_KEY must not be empty")
        if self.start_slot < 0:
            raise ConfigError(f"START_SLOT must be >= 0, got {self.start_slot}")
        if self.end_slot is not None and self.end_slot < self.start_slot:
            raise ConfigError(
                f"END_SLOT ({self.end_slot}) must be >= START_SLOT ({self.start_slot})"
            )
        if self.tx_limit < 1:
            raise ConfigError(f"TX_LIMIT must be >= 1, got {self.tx_limit}")
        if self.root_lag < 0:
            raise ConfigError(f"ROOT_LAG must be >= 0, got {self.root_lag}")
        if self.fetch_max_attempts < 1 or self.persist_max_attempts < 1:
            raise ConfigError("FETCH_MAX_ATTEMPTS and PERSIST_MAX_ATTEMPTS must be >= 1")
        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < self.backoff_base_seconds:
            raise ConfigError("backoff requires 0 <= BACKOFF_BASE_SECONDS <= BACKOFF_MAX_SECONDS")
        if self.rate_limit_per_second < 0:
            raise ConfigError("RPC_RATE_LIMIT_PER_SECOND must be >= 0")

    def with_overrides(self, **overrides) -> "IngestSettings":
        """Return a copy with the non-``None`` overrides applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "IngestSettings":
        """Build settings from environment variables.

        Raises:
            ConfigError: If a variable cannot be parsed or a value is out of range.
        """
        env = os.environ if environ is None else environ
        return cls(
            rpc_url=env.get("RPC_URL", DEFAULT_RPC_URL),
            rpc_timeout_seconds=_parse(env, "RPC_TIMEOUT_SECONDS", float, 30.0),
            database_path=Path(env.get("DATABASE_PATH", str(DEFAULT_DB_PATH))),
            db_reset_on_start=_parse_bool(env, "DB_RESET_ON_START", False),
            stream_key=env.get("STREAM_KEY", "default"),
            start_slot=_parse(env, "START_SLOT", int, 0),
            end_slot=_parse(env, "END_SLOT", int, None),
            tx_limit=_parse(env, "TX_LIMIT", int, 1000),
            root_lag=_parse(env, "ROOT_LAG", int, 100),
            rate_limit_per_second=_parse(env, "RPC_RATE_LIMIT_PER_SECOND", float, 5.0),
            fetch_max_attempts=_parse(env, "FETCH_MAX_ATTEMPTS", int, 5),
            persist_max_attempts=_parse(env, "PERSIST_MAX_ATTEMPTS", int, 3),
            backoff_base_seconds=_parse(env, "BACKOFF_BASE_SECONDS", float, 0.5),
            backoff_max_seconds=_parse(env, "BACKOFF_MAX_SECONDS", float, 30.0),
            rate_limit_cooldown_seconds=_parse(env, "RATE_LIMIT_COOLDOWN_SECONDS", float, 60.0),
            tip_poll_interval_seconds=_parse(env, "TIP_POLL_INTERVAL_SECONDS", float, 2.0),
            ingestion_enabled=_parse_bool(env, "INGESTION_ENABLED", False),
            metrics_port=_parse(env, "METRICS_PORT", int, 8001),
        )


def _parse(env: Mapping[str, str], name: str, cast, default):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as error:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from error


def _parse_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")
