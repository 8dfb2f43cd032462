"""Storage configuration for pypersist.

Two layers are supported:

* :class:`StorageOptions` / :class:`Bucket` describe how one container is
  persisted.  They are pydantic models and accept the camelCase spelling
  of every field (``keySuffix``, ``debounceMs``, ...).
* :class:`GlobalOptions` holds process-wide defaults that container-level
  options override.
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from pypersist.exceptions import ConfigurationError

_MODEL_CONFIG = ConfigDict(
    frozen=True,
    extra="forbid",
    populate_by_name=True,
    alias_generator=to_camel,
    arbitrary_types_allowed=True,
)


class RateLimit(BaseModel):
    """Write rate limit, in milliseconds.

    When both are set, throttling wins.
    """

    model_config = _MODEL_CONFIG

    debounce_ms: float | None = None
    throttle_ms: float | None = None


class Bucket(BaseModel):
    """A partition of container state persisted to one backend."""

    model_config = _MODEL_CONFIG

    adapter_kind: str | None = None
    key_suffix: str | None = None
    include: str | list[str] | None = None
    exclude: str | list[str] | None = None
    transform_on_hydrate: Callable[..., Any] | None = None
    rate_limit: RateLimit | None = None
    adapter_options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("adapter_kind", "key_suffix")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @model_validator(mode="after")
    def _exclusive_filters(self) -> Bucket:
        if self.include is not None and self.exclude is not None:
            raise ConfigurationError("Cannot use both include and exclude in the same bucket")
        return self


class StorageOptions(BaseModel):
    """Structured per-container configuration."""

    model_config = _MODEL_CONFIG

    buckets: list[Bucket] | Bucket = Field(default_factory=list)
    namespace: str | None = None
    version: str | None = None
    default_adapter_kind: str | None = None
    rate_limit: RateLimit | None = None
    on_error: Callable[..., Any] | None = None

    @field_validator("version", mode="before")
    @classmethod
    def _version_to_str(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


def _env_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


@dataclasses.dataclass(frozen=True)
class GlobalOptions:
    """Process-wide defaults.

    Parameters
    ----------
    namespace : str or None
        Prefix for every storage key (prevents collisions between apps).
    version : str or None
        Schema version; contributes ``v<version>`` to every key.
    default_adapter_kind : str or None
        Adapter used by buckets that do not name one.
    debounce_ms : float or None
        Default debounce delay for every bucket.
    throttle_ms : float or None
        Default throttle window for every bucket.
    on_error : callable or None
        Diagnostic sink used when the container options do not set one.
    """

    namespace: str | None = None
    version: str | None = None
    default_adapter_kind: str | None = None
    debounce_ms: float | None = None
    throttle_ms: float | None = None
    on_error: Callable[..., Any] | None = None

    @property
    def rate_limit(self) -> RateLimit | None:
        if self.debounce_ms is None and self.throttle_ms is None:
            return None
        return RateLimit(debounce_ms=self.debounce_ms, throttle_ms=self.throttle_ms)

    @classmethod
    def from_env(cls, **overrides: Any) -> GlobalOptions:
        """Create options from ``PYPERSIST_*`` environment variables.

        Explicit keyword arguments take precedence over environment values.
        """
        env = os.environ

        kwargs: dict[str, Any] = {}
        _ENV_STR_MAP = {
            "PYPERSIST_NAMESPACE": "namespace",
            "PYPERSIST_VERSION": "version",
            "PYPERSIST_DEFAULT_ADAPTER": "default_adapter_kind",
        }
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and val.strip():
                kwargs[field_name] = val.strip()

        debounce = _env_float(env.get("PYPERSIST_DEBOUNCE_MS"))
        if debounce is not None:
            kwargs["debounce_ms"] = debounce
        throttle = _env_float(env.get("PYPERSIST_THROTTLE_MS"))
        if throttle is not None:
            kwargs["throttle_ms"] = throttle

        kwargs.update(overrides)
        return cls(**kwargs)
