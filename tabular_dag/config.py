"""
Evaluation configuration and logging setup.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = 'TABULAR_DAG_'

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


class EnvironmentSettings(BaseSettings):
    """``TABULAR_DAG_*`` environment variables; unset or empty ones keep the defaults."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, case_sensitive=False, env_ignore_empty=True)

    irls_tolerance: float = 1e-8
    irls_max_iterations: int = 50
    parallel: bool = False
    max_workers: int = 4
    profiling_enabled: bool = False
    log_level: str = 'WARNING'


@dataclass(frozen=True)
class EvaluationConfig:
    """Immutable context for one or more evaluation passes."""
    irls_tolerance: float = 1e-8
    irls_max_iterations: int = 50
    parallel: bool = False
    max_workers: int = 4
    profiling_enabled: bool = False

    def __post_init__(self):
        if self.irls_tolerance <= 0:
            raise ValueError(f"Invalid IRLS tolerance: {self.irls_tolerance}")
        if self.irls_max_iterations < 1:
            raise ValueError(f"Invalid IRLS iteration cap: {self.irls_max_iterations}")
        if self.max_workers < 1:
            raise ValueError(f"Invalid worker count: {self.max_workers}")

    def with_overrides(self, **overrides: Any) -> EvaluationConfig:
        """Create new config with some fields replaced."""
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_env(cls) -> EvaluationConfig:
        """
        Build a config from ``TABULAR_DAG_*`` environment variables.

        ``TABULAR_DAG_IRLS_TOLERANCE=1e-10`` overrides ``irls_tolerance`` and
        so on. Malformed values raise pydantic's ``ValidationError``.
        """
        settings = EnvironmentSettings()
        return cls(**settings.model_dump(include={f.name for f in fields(cls)}))


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stderr handler to the package logger."""
    level = level or EnvironmentSettings().log_level
    logger = logging.getLogger('tabular_dag')
    logger.setLevel(level.upper())

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)


DEFAULT_CONFIG = EvaluationConfig()


__all__ = [
    'EnvironmentSettings',
    'EvaluationConfig',
    'DEFAULT_CONFIG',
    'configure_logging',
]
