"""Settings — resilience configuration binding.

Breaker and retry-policy sections are keyed by dependency name.  The
empty-string key holds the unnamed default section.  Lookups fall back
key by key: named section → unnamed section → hard-coded default.

Sections can be supplied as JSON through ``ORDER_RESILIENCE_``-prefixed
environment variables, or from a flat colon-keyed mapping such as
``{"CircuitBreaker:sql:FailureThreshold": "3"}`` via
:meth:`Settings.from_mapping`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

from order_resilience.models.policies import CircuitBreakerConfig, RetryConfig, RetryStrategy

logger = logging.getLogger(__name__)

DEFAULT_SECTION = ""

_CIRCUIT_BREAKER_PREFIX = "CircuitBreaker"
_RETRY_POLICY_PREFIX = "RetryPolicy"


class CircuitBreakerSection(BaseModel):
    """One ``CircuitBreaker[:{name}]`` configuration section.

    Unset keys are ``None`` so the resolver can tell "absent" from a value.
    """

    model_config = ConfigDict(extra="ignore")

    FailureThreshold: int | None = Field(default=None, ge=1)
    TimeoutSeconds: float | None = Field(default=None, ge=0)
    SuccessThreshold: int | None = Field(default=None, ge=1)
    HalfOpenMaxCalls: int | None = Field(default=None, ge=1)


class RetryPolicySection(BaseModel):
    """One ``RetryPolicy[:{name}]`` configuration section."""

    model_config = ConfigDict(extra="ignore")

    MaxRetryAttempts: int | None = Field(default=None, ge=0)
    InitialDelaySeconds: float | None = Field(default=None, ge=0)
    MaxDelaySeconds: float | None = Field(default=None, ge=0)
    BackoffMultiplier: float | None = Field(default=None, gt=0)
    Strategy: str | None = None


def _canonical_key(section: type[BaseModel], key: str) -> str:
    """Map *key* onto the section's field name, ignoring case."""
    for field in section.model_fields:
        if field.lower() == key.lower():
            return field
    return key


def _pick(named: BaseModel | None, default: BaseModel | None, key: str, fallback: Any) -> Any:
    for section in (named, default):
        if section is not None:
            value = getattr(section, key)
            if value is not None:
                return value
    return fallback


def parse_strategy(raw: str | None) -> RetryStrategy:
    """Parse a strategy name case-insensitively, defaulting to EXPONENTIAL."""
    if raw is None:
        return RetryStrategy.EXPONENTIAL
    try:
        return RetryStrategy(raw.strip().lower())
    except ValueError:
        logger.warning("Unknown retry strategy %r — falling back to exponential", raw)
        return RetryStrategy.EXPONENTIAL


class Settings(BaseSettings):
    """Resilience configuration.

    Fields can be overridden by environment variables prefixed with
    ``ORDER_RESILIENCE_``.  The section maps take JSON, for example
    ``ORDER_RESILIENCE_CIRCUIT_BREAKER='{"sql": {"FailureThreshold": 3}}'``.
    """

    # ── Per-dependency sections ('' = unnamed default) ─────────────
    CIRCUIT_BREAKER: dict[str, CircuitBreakerSection] = {}
    RETRY_POLICY: dict[str, RetryPolicySection] = {}

    model_config = {
        "env_prefix": "ORDER_RESILIENCE_",
    }

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> Settings:
        """Build settings from flat ``Section[:name]:Key`` entries.

        Keys outside the ``CircuitBreaker`` / ``RetryPolicy`` sections are
        ignored.  Section prefixes and key names match case-insensitively;
        dependency names are kept as written.
        """
        breakers: dict[str, dict[str, Any]] = {}
        policies: dict[str, dict[str, Any]] = {}

        for raw_key, value in values.items():
            parts = raw_key.split(":")
            if len(parts) == 2:
                prefix, name, key = parts[0], DEFAULT_SECTION, parts[1]
            elif len(parts) == 3:
                prefix, name, key = parts
            else:
                continue

            if prefix.lower() == _CIRCUIT_BREAKER_PREFIX.lower():
                breakers.setdefault(name, {})[_canonical_key(CircuitBreakerSection, key)] = value
            elif prefix.lower() == _RETRY_POLICY_PREFIX.lower():
                policies.setdefault(name, {})[_canonical_key(RetryPolicySection, key)] = value

        return cls(
            CIRCUIT_BREAKER={n: CircuitBreakerSection(**v) for n, v in breakers.items()},
            RETRY_POLICY={n: RetryPolicySection(**v) for n, v in policies.items()},
        )

    def circuit_breaker_config(self, name: str) -> CircuitBreakerConfig:
        """Resolve the breaker configuration for dependency *name*."""
        named = self.CIRCUIT_BREAKER.get(name) if name else None
        default = self.CIRCUIT_BREAKER.get(DEFAULT_SECTION)
        base = CircuitBreakerConfig()
        return CircuitBreakerConfig(
            failure_threshold=_pick(named, default, "FailureThreshold", base.failure_threshold),
            open_timeout=float(_pick(named, default, "TimeoutSeconds", base.open_timeout)),
            success_threshold=_pick(named, default, "SuccessThreshold", base.success_threshold),
            half_open_max_calls=_pick(named, default, "HalfOpenMaxCalls", base.half_open_max_calls),
        )

    def retry_config(self, name: str) -> RetryConfig:
        """Resolve the retry-policy configuration for dependency *name*."""
        named = self.RETRY_POLICY.get(name) if name else None
        default = self.RETRY_POLICY.get(DEFAULT_SECTION)
        base = RetryConfig()
        return RetryConfig(
            max_attempts=_pick(named, default, "MaxRetryAttempts", base.max_attempts),
            initial_delay=float(_pick(named, default, "InitialDelaySeconds", base.initial_delay)),
            max_delay=float(_pick(named, default, "MaxDelaySeconds", base.max_delay)),
            backoff_multiplier=float(
                _pick(named, default, "BackoffMultiplier", base.backoff_multiplier)
            ),
            strategy=parse_strategy(_pick(named, default, "Strategy", None)),
        )
