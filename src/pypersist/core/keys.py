"""Storage key derivation."""

from __future__ import annotations

from pypersist._constants import KEY_SEPARATOR
from pypersist.config import Bucket


def generate_key(
    container_id: str,
    bucket: Bucket,
    namespace: str | None = None,
    version: str | None = None,
) -> str:
    """Build ``[namespace:][v<version>:]<container_id>[:<key_suffix>]``.

    A key with no component besides the container id is the bare id, which
    keeps single-bucket, un-namespaced data readable by older releases.
    """
    parts: list[str] = []
    if namespace:
        parts.append(namespace)
    if version:
        parts.append(f"v{version}")
    parts.append(container_id)
    if bucket.key_suffix:
        parts.append(bucket.key_suffix)

    if len(parts) == 1:
        return container_id
    return KEY_SEPARATOR.join(parts)
