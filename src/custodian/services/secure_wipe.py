"""Irreversible field scrubbing before deletion.

A wipe overwrites every string field of a record with data derived from
a fresh 32-byte pattern from the ``secrets`` module. The pattern itself
is discarded; only its SHA-256 digest is returned for the audit trail,
so a wipe can be attested without keeping anything that would let the
overwritten values be reconstructed.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, fields, is_dataclass
from typing import Any

PATTERN_BYTES = 32


@dataclass(frozen=True)
class WipeResult:
    """Outcome of a secure wipe.

    Attributes:
        pattern_hash: SHA-256 hex digest of the overwrite pattern.
        fields_wiped: Names of the fields that were overwritten.
    """

    pattern_hash: str
    fields_wiped: tuple[str, ...]


def generate_pattern() -> bytes:
    """Return a fresh cryptographically secure overwrite pattern."""
    return secrets.token_bytes(PATTERN_BYTES)


def hash_pattern(pattern: bytes) -> str:
    """Return the SHA-256 hex digest recorded in place of the pattern."""
    return hashlib.sha256(pattern).hexdigest()


def derive_overwrite(pattern: bytes, label: str, length: int) -> str:
    """Derive a hex string of ``length`` characters from the pattern.

    Each field gets a distinct stream so no two fields carry the same value.
    """
    chunks: list[str] = []
    counter = 0
    while sum(len(c) for c in chunks) < length:
        block = hashlib.sha256(pattern + label.encode() + counter.to_bytes(4, "big"))
        chunks.append(block.hexdigest())
        counter += 1
    return "".join(chunks)[:length]


def _scrub_mapping(values: dict[str, Any], pattern: bytes, label: str) -> dict[str, Any]:
    return {
        key: derive_overwrite(pattern, f"{label}.{key}", len(value))
        if isinstance(value, str)
        else None
        for key, value in values.items()
    }


def secure_wipe(target: Any, *, keep: tuple[str, ...] = ()) -> WipeResult:
    """Overwrite the string fields of a dataclass instance in place.

    String fields are replaced by pattern-derived hex of the same length.
    Dictionary fields keep their keys, with string values overwritten the
    same way and other values dropped. Fields named in ``keep`` (typically
    the primary key needed for the follow-up delete) are left untouched.

    Args:
        target: Dataclass instance to scrub.
        keep: Field names to leave intact.

    Returns:
        WipeResult with the pattern digest and the overwritten field names.

    Raises:
        TypeError: If ``target`` is not a dataclass instance.
    """
    if not is_dataclass(target) or isinstance(target, type):
        msg = f"secure_wipe expects a dataclass instance, got {type(target).__name__}"
        raise TypeError(msg)

    pattern = generate_pattern()
    wiped: list[str] = []
    for f in fields(target):
        if f.name in keep:
            continue
        value = getattr(target, f.name)
        if isinstance(value, str):
            setattr(target, f.name, derive_overwrite(pattern, f.name, len(value)))
            wiped.append(f.name)
        elif isinstance(value, dict):
            setattr(target, f.name, _scrub_mapping(value, pattern, f.name))
            wiped.append(f.name)

    return WipeResult(pattern_hash=hash_pattern(pattern), fields_wiped=tuple(wiped))
