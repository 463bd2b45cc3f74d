"""
Engine configuration.

All tunables live in one EngineConfig, loaded from an optional YAML file:

    database:
      url: sqlite:///ontoforge.db
    heartbeat:
      interval_seconds: 30
      orphan_multiplier: 3
    confidence:
      bypass_threshold: 0.9
      accept_threshold: 0.7
    llm:
      model: llama3.1:8b
      max_concurrency: 4

The ONTOFORGE_DATABASE_URL environment variable overrides database.url.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ontoforge.errors import ConfigurationError

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "ONTOFORGE_DATABASE_URL"


@dataclass
class DatabaseConfig:
    """Where runs, stages and relationships are persisted."""
    url: str = "sqlite:///ontoforge.db"
    echo: bool = False


@dataclass
class HeartbeatConfig:
    """Ownership heartbeat. A run is orphaned after interval * orphan_multiplier."""
    interval_seconds: float = 30.0
    orphan_multiplier: float = 3.0

    @property
    def orphan_threshold_seconds(self) -> float:
        return self.interval_seconds * self.orphan_multiplier

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ConfigurationError("heartbeat.interval_seconds must be positive")
        if not 2.0 <= self.orphan_multiplier <= 3.0:
            raise ConfigurationError("heartbeat.orphan_multiplier must be between 2 and 3")


@dataclass
class RetryConfig:
    """Bounded exponential backoff for transient failures. Jitter is in seconds."""
    max_retries: int = 3
    initial_delay: float = 0.1
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: float = 0.1


@dataclass
class DiscoveryConfig:
    """Thresholds for statistical join validation."""
    min_match_rate: float = 0.95
    max_reverse_orphan_ratio: float = 0.5
    small_cardinality_limit: int = 20
    max_target_tables: int = 2


@dataclass
class ConfidencePolicy:
    """
    Single confidence policy shared by discovery and validation.

    Candidates at or above bypass_threshold are accepted without LLM
    arbitration. Below it, an LLM verdict must reach accept_threshold, and the
    deterministic fallback accepts at accept_threshold as well.
    """
    bypass_threshold: float = 0.9
    accept_threshold: float = 0.7

    def __post_init__(self):
        if not 0.0 <= self.accept_threshold <= self.bypass_threshold <= 1.0:
            raise ConfigurationError(
                "confidence thresholds must satisfy 0 <= accept_threshold <= bypass_threshold <= 1"
            )

    def bypasses_arbitration(self, confidence: float) -> bool:
        return confidence >= self.bypass_threshold

    def accepts(self, confidence: float) -> bool:
        return confidence >= self.accept_threshold


@dataclass
class LLMConfig:
    """Ollama connection settings."""
    enabled: bool = True
    model: str = "llama3.1:8b"
    base_url: str = "http://localhost:11434"
    timeout_seconds: float = 30.0
    max_concurrency: int = 4
    classify_columns: bool = True
    enrich_relationships: bool = True


@dataclass
class PipelineConfig:
    """Scheduler settings."""
    stage_timeout_seconds: float = 1800.0
    refresh_parallelism: int = 2


@dataclass
class EngineConfig:
    """Top-level configuration for the extraction engine."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    confidence: ConfidencePolicy = field(default_factory=ConfidencePolicy)
    llm: LLMConfig = field(default_factory=LLMConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EngineConfig:
        """Create from a (possibly partial) dictionary."""
        sections = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}

        for key, value in (data or {}).items():
            if key not in sections:
                raise ConfigurationError(f"Unknown configuration section: {key}")
            section_cls = sections[key].default_factory
            if not isinstance(value, dict):
                raise ConfigurationError(f"Configuration section '{key}' must be a mapping")
            known = {f.name for f in fields(section_cls)}
            unknown = set(value) - known
            if unknown:
                raise ConfigurationError(
                    f"Unknown keys in section '{key}': {', '.join(sorted(unknown))}"
                )
            kwargs[key] = section_cls(**value)

        return cls(**kwargs)


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """
    Load configuration from YAML, applying environment overrides.

    Args:
        path: Optional YAML file. Defaults are used when omitted.

    Returns:
        EngineConfig
    """
    data: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        logger.debug(f"Loaded configuration from {path}")

    config = EngineConfig.from_dict(data)

    env_url = os.environ.get(DATABASE_URL_ENV)
    if env_url:
        config.database.url = env_url

    return config
