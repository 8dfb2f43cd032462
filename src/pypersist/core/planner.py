"""Resolve declarative storage configuration into executable plans."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from pypersist._constants import DEFAULT_ADAPTER_OPTIONS, FALLBACK_ADAPTER_KIND
from pypersist.adapters import StorageAdapter, create_adapter
from pypersist.config import Bucket, StorageOptions
from pypersist.exceptions import ConfigurationError

StorageConfig = str | Bucket | StorageOptions | Mapping[str, Any] | Sequence[Bucket | Mapping[str, Any]] | None


@dataclass(frozen=True, eq=False)
class Plan:
    """One bucket bound to the adapter instance that serves it.

    Plans compare and hash by identity so they can key per-plan caches.
    """

    bucket: Bucket
    adapter: StorageAdapter

    @property
    def adapter_kind(self) -> str:
        return self.bucket.adapter_kind or FALLBACK_ADAPTER_KIND


def _with_adapter(bucket: Bucket, default_kind: str | None) -> Bucket:
    kind = bucket.adapter_kind or default_kind or FALLBACK_ADAPTER_KIND
    update: dict[str, Any] = {}
    if kind != bucket.adapter_kind:
        update["adapter_kind"] = kind
    if not bucket.adapter_options and kind in DEFAULT_ADAPTER_OPTIONS:
        update["adapter_options"] = dict(DEFAULT_ADAPTER_OPTIONS[kind])
    return bucket.model_copy(update=update) if update else bucket


def _as_bucket(value: Bucket | Mapping[str, Any]) -> Bucket:
    if isinstance(value, Bucket):
        return value
    if isinstance(value, Mapping):
        try:
            return Bucket.model_validate(dict(value))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid bucket configuration: {exc}") from exc
    raise ConfigurationError(f"Expected a bucket, got {type(value).__name__}")


def resolve_storage_options(config: StorageConfig) -> StorageOptions | None:
    """Return *config* as :class:`StorageOptions` when it is the structured form."""
    if isinstance(config, StorageOptions):
        return config
    if isinstance(config, Mapping) and "buckets" in config:
        try:
            return StorageOptions.model_validate(dict(config))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid storage configuration: {exc}") from exc
    return None


def resolve_buckets(config: StorageConfig, default_adapter_kind: str | None = None) -> list[Bucket]:
    """Normalize every accepted configuration form into a bucket list.

    Accepted forms:

    - ``None``: no buckets; the caller skips persistence entirely.
    - an adapter kind name: one bucket covering the whole state.
    - a single :class:`Bucket` (or mapping).
    - a non-empty list of buckets (or mappings).
    - :class:`StorageOptions` (or a mapping with ``buckets``).  An empty
      ``buckets`` yields one bucket on the default adapter.

    A bucket without an adapter kind gets the kind configured in *config*,
    then *default_adapter_kind*, then ``session``.
    """
    if config is None:
        return []

    if isinstance(config, str):
        kind = config.strip()
        if not kind:
            raise ConfigurationError("Adapter kind must be non-empty")
        return [_with_adapter(Bucket(adapter_kind=kind), None)]

    options = resolve_storage_options(config)
    if options is not None:
        default_kind = options.default_adapter_kind or default_adapter_kind
        declared = options.buckets if isinstance(options.buckets, list) else [options.buckets]
        if not declared:
            return [_with_adapter(Bucket(), default_kind)]
        return [_with_adapter(bucket, default_kind) for bucket in declared]

    if isinstance(config, (Bucket, Mapping)):
        return [_with_adapter(_as_bucket(config), default_adapter_kind)]

    if isinstance(config, Sequence):
        if not config:
            raise ConfigurationError("Bucket list must not be empty")
        return [_with_adapter(_as_bucket(item), default_adapter_kind) for item in config]

    raise ConfigurationError(f"Unsupported storage configuration: {type(config).__name__}")


def build_plans(buckets: Sequence[Bucket], container_id: str) -> list[Plan]:
    """Bind every bucket to a fresh adapter instance, preserving order."""
    plans: list[Plan] = []
    for bucket in buckets:
        kind = bucket.adapter_kind or FALLBACK_ADAPTER_KIND
        adapter = create_adapter(kind, bucket.adapter_options, container_id)
        plans.append(Plan(bucket=bucket, adapter=adapter))
    return plans
