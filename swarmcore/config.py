# swarmcore/config.py
"""
Configuration for the swarm coordination engine.

All tunables flow through this module. Values are loaded from environment
variables (optionally via a .env file at the project root) and validated with
Pydantic. Out-of-range numbers are clamped rather than rejected so a bad
environment never prevents the engine from starting.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings

# Resolve .env relative to the project root (one level above swarmcore/),
# so the config works regardless of the caller's working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single str         → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → (parsed by pydantic-settings before this runs)
      - An existing list     → passthrough with str coercion
    """
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


StrList = Annotated[list[str], BeforeValidator(_coerce_str_list)]


class SwarmConfig(BaseSettings):
    """Configuration for swarm formation, message delivery and monitoring."""

    # Matching
    max_workers: int = Field(5, alias="SWARM_MAX_WORKERS")
    default_capabilities: StrList = Field(
        default_factory=lambda: ["general_processing"],
        alias="SWARM_DEFAULT_CAPABILITIES",
    )
    # Decomposition
    min_subtask_minutes: int = Field(5, alias="SWARM_MIN_SUBTASK_MINUTES")
    max_subtask_minutes: int = Field(30, alias="SWARM_MAX_SUBTASK_MINUTES")
    # Delivery
    delivery_timeout: float = Field(5.0, alias="SWARM_DELIVERY_TIMEOUT")
    max_concurrent_deliveries: int = Field(16, alias="SWARM_MAX_CONCURRENT_DELIVERIES")
    offline_queue_limit: int = Field(500, alias="SWARM_OFFLINE_QUEUE_LIMIT")
    # Monitoring
    monitoring_enabled: bool = Field(True, alias="SWARM_MONITORING_ENABLED")
    monitor_interval: float = Field(30.0, alias="SWARM_MONITOR_INTERVAL")
    health_history_limit: int = Field(100, alias="SWARM_HEALTH_HISTORY_LIMIT")
    unresponsive_after: float = Field(300.0, alias="SWARM_UNRESPONSIVE_AFTER")
    # Stall policy
    stall_factor: float = Field(2.0, alias="SWARM_STALL_FACTOR")
    max_subtask_retries: int = Field(2, alias="SWARM_MAX_SUBTASK_RETRIES")
    # Storage / directory
    data_dir: Path = Field(Path("swarm_data"), alias="SWARM_DATA_DIR")
    agents_file: Optional[Path] = Field(None, alias="SWARM_AGENTS_FILE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "SwarmConfig":
        self.max_workers = max(1, min(50, int(self.max_workers)))
        self.min_subtask_minutes = max(1, int(self.min_subtask_minutes))
        self.max_subtask_minutes = max(self.min_subtask_minutes, int(self.max_subtask_minutes))
        self.delivery_timeout = max(0.05, float(self.delivery_timeout))
        self.max_concurrent_deliveries = max(1, int(self.max_concurrent_deliveries))
        self.offline_queue_limit = max(1, int(self.offline_queue_limit))
        self.monitor_interval = max(0.1, float(self.monitor_interval))
        self.health_history_limit = max(1, int(self.health_history_limit))
        self.unresponsive_after = max(1.0, float(self.unresponsive_after))
        self.stall_factor = max(1.0, float(self.stall_factor))
        self.max_subtask_retries = max(0, min(10, int(self.max_subtask_retries)))
        if not self.default_capabilities:
            self.default_capabilities = ["general_processing"]
        return self
