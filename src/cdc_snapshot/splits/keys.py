"""Key domain primitives: open-ended sentinels, ordering and bound encoding."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


class _MinKey:
    """Sorts below every value of any key domain."""

    __slots__ = ()

    def __lt__(self, other: object) -> bool:
        return not isinstance(other, _MinKey)

    def __le__(self, other: object) -> bool:
        return True

    def __gt__(self, other: object) -> bool:
        return False

    def __ge__(self, other: object) -> bool:
        return isinstance(other, _MinKey)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _MinKey)

    def __hash__(self) -> int:
        return hash("$minKey")

    def __repr__(self) -> str:
        return "MIN_KEY"

    def __reduce__(self) -> str:
        return "MIN_KEY"


class _MaxKey:
    """Sorts above every value of any key domain."""

    __slots__ = ()

    def __lt__(self, other: object) -> bool:
        return False

    def __le__(self, other: object) -> bool:
        return isinstance(other, _MaxKey)

    def __gt__(self, other: object) -> bool:
        return not isinstance(other, _MaxKey)

    def __ge__(self, other: object) -> bool:
        return True

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _MaxKey)

    def __hash__(self) -> int:
        return hash("$maxKey")

    def __repr__(self) -> str:
        return "MAX_KEY"

    def __reduce__(self) -> str:
        return "MAX_KEY"


MIN_KEY = _MinKey()
MAX_KEY = _MaxKey()


@dataclass(frozen=True, slots=True)
class KeyField:
    """One component of a shard key."""

    name: str
    type: str


def key_lt(a: Any, b: Any) -> bool:
    """Strict ordering over bound values, sentinels included.

    Raises:
        TypeError: if the two values belong to incomparable domains.
    """
    return bool(a < b)


def encode_bound(value: Any) -> Any:
    """Encode a bound into a JSON-safe structure."""
    if value is MIN_KEY or isinstance(value, _MinKey):
        return {"$minKey": 1}
    if value is MAX_KEY or isinstance(value, _MaxKey):
        return {"$maxKey": 1}
    if isinstance(value, tuple):
        return {"$tuple": [encode_bound(v) for v in value]}
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    if value is None or isinstance(value, str | int | float | bool):
        return value
    msg = f"Cannot encode key bound of type {type(value).__name__}"
    raise TypeError(msg)


def decode_bound(data: Any) -> Any:
    """Inverse of :func:`encode_bound`."""
    if isinstance(data, dict):
        if "$minKey" in data:
            return MIN_KEY
        if "$maxKey" in data:
            return MAX_KEY
        if "$tuple" in data:
            return tuple(decode_bound(v) for v in data["$tuple"])
        if "$date" in data:
            return datetime.fromisoformat(data["$date"])
        msg = f"Unrecognised encoded key bound: {data!r}"
        raise ValueError(msg)
    if isinstance(data, list):
        return tuple(decode_bound(v) for v in data)
    return data
