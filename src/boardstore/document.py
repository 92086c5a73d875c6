"""Versioned config document: upgraders, defaults, merge and encoding."""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Callable

from boardstore.errors import MissingUpgraderError, ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "DOCUMENT_VERSION",
    "VERSION_KEY",
    "CORRUPT_KEY",
    "upgrader",
    "upgrade_document",
    "default_document",
    "deep_merge",
    "parse_document",
    "serialize_document",
]

DOCUMENT_VERSION = 2
VERSION_KEY = "schemaVersion"
CORRUPT_KEY = "_corrupt"

LEGACY_FIELDS = ("setupComplete", "isDraft", "questionText")


def _default_display_settings() -> dict[str, Any]:
    return {"showNames": False, "showReactions": False, "theme": "default", "pageSize": 20}


# --- Upgrader registry ---

_UPGRADERS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {}


def upgrader(*, from_version: int) -> Callable[..., Any]:
    """Decorator registering a document upgrader from ``from_version`` to the next.

    Example::

        @upgrader(from_version=2)
        def _v2_to_v3(doc: dict) -> dict:
            doc["theme"] = doc.pop("colour", "default")
            return doc
    """

    def decorator(func: Callable[[dict[str, Any]], dict[str, Any]]) -> Callable[..., Any]:
        if from_version in _UPGRADERS:
            raise ValueError(
                f"Duplicate document upgrader for from_version={from_version}: "
                f"{_UPGRADERS[from_version].__qualname__} and {func.__qualname__}"
            )
        _UPGRADERS[from_version] = func
        return func

    return decorator


@upgrader(from_version=0)
def _v0_to_v1(doc: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(doc.get("displaySettings"), dict):
        doc["displaySettings"] = _default_display_settings()
    if not isinstance(doc.get("columnMapping"), dict):
        doc["columnMapping"] = {}
    doc["setupStatus"] = doc.get("setupStatus") or "pending"
    doc["isPublished"] = bool(doc.get("isPublished", False))
    return doc


@upgrader(from_version=1)
def _v1_to_v2(doc: dict[str, Any]) -> dict[str, Any]:
    for name in LEGACY_FIELDS:
        doc.pop(name, None)
    return doc


def _chain_upgraders(
    registry: dict[int, Callable[[dict[str, Any]], dict[str, Any]]],
    from_version: int,
    to_version: int,
) -> Callable[[dict[str, Any]], dict[str, Any]]:
    """Compose upgraders for every step from ``from_version`` to ``to_version``."""
    missing = [v for v in range(from_version, to_version) if v not in registry]
    if missing:
        raise MissingUpgraderError(missing)
    chain = [registry[v] for v in range(from_version, to_version)]

    def composed(doc: dict[str, Any]) -> dict[str, Any]:
        for fn in chain:
            doc = fn(doc)
        return doc

    return composed


def document_version(doc: dict[str, Any]) -> int:
    raw = doc.get(VERSION_KEY, 0)
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        return 0


def upgrade_document(doc: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``doc`` upgraded to DOCUMENT_VERSION and stamped.

    Documents stamped with a newer version than this code knows are returned
    unchanged.
    """
    result = copy.deepcopy(doc)
    version = document_version(result)
    if version > DOCUMENT_VERSION:
        return result
    if version < DOCUMENT_VERSION:
        result = _chain_upgraders(_UPGRADERS, version, DOCUMENT_VERSION)(result)
    result[VERSION_KEY] = DOCUMENT_VERSION
    return result


def default_document(created_at: str | None = None) -> dict[str, Any]:
    doc: dict[str, Any] = {
        VERSION_KEY: DOCUMENT_VERSION,
        "setupStatus": "pending",
        "isPublished": False,
        "displaySettings": _default_display_settings(),
        "columnMapping": {},
    }
    if created_at is not None:
        doc["createdAt"] = created_at
    return doc


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Merge ``patch`` into a copy of ``base``; nested objects merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def parse_document(text: Any) -> tuple[dict[str, Any], bool]:
    """Decode a document cell. Returns ``(document, ok)``.

    Blank cells are an empty document. Anything that is not a JSON object
    degrades to ``{}`` with ``ok=False``.
    """
    if isinstance(text, dict):
        return copy.deepcopy(text), True
    if text is None or (isinstance(text, str) and not text.strip()):
        return {}, True
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return {}, False
    if not isinstance(value, dict):
        return {}, False
    return value, True


def serialize_document(doc: dict[str, Any], *, max_chars: int) -> str:
    """Encode a document for a single cell, enforcing the size ceiling."""
    try:
        text = json.dumps(doc, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"document is not JSON-serializable: {e}") from e
    if len(text) > max_chars:
        raise ValidationError(f"document is {len(text)} characters; the limit is {max_chars}")
    return text
