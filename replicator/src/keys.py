from __future__ import annotations

from typing import Any

KEY_SEPARATOR = "/"


class InvalidKeyError(ValueError):
    """Raised when an object reference or work queue key cannot be decoded."""


def meta_namespace_key(obj: Any) -> str:
    """Return the ``<namespace>/<name>`` work queue key for a namespaced object."""
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        raise InvalidKeyError("object has no metadata")

    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not namespace or not name:
        raise InvalidKeyError(f"object is missing namespace or name ({namespace!r}, {name!r})")
    if KEY_SEPARATOR in namespace or KEY_SEPARATOR in name:
        raise InvalidKeyError(f"object reference contains {KEY_SEPARATOR!r}: {namespace}/{name}")
    return f"{namespace}{KEY_SEPARATOR}{name}"


def split_key(key: str) -> tuple[str, str]:
    """Split a work queue key into ``(namespace, name)``.

    Anything other than exactly two non-empty components is rejected, so a
    malformed key is distinguishable from a well-formed key that simply does
    not resolve to an object.
    """
    parts = key.split(KEY_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidKeyError(f"unexpected key format: {key!r}")
    return parts[0], parts[1]
