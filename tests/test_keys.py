from __future__ import annotations

from pypersist.config import Bucket
from pypersist.core.keys import generate_key


def test_bare_container_id() -> None:
    assert generate_key("counter", Bucket()) == "counter"


def test_all_components() -> None:
    bucket = Bucket(key_suffix="prefs")
    assert generate_key("counter", bucket, namespace="app", version="2") == "app:v2:counter:prefs"


def test_namespace_only() -> None:
    assert generate_key("counter", Bucket(), namespace="app") == "app:counter"


def test_version_and_suffix() -> None:
    assert generate_key("counter", Bucket(key_suffix="x"), version="3") == "v3:counter:x"


def test_blank_suffix_is_ignored() -> None:
    assert generate_key("counter", Bucket(key_suffix="  ")) == "counter"
