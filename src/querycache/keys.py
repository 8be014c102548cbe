"""Canonical query keys.

A query identifier is any nesting of ``None``, booleans, numbers, strings,
sequences (lists or tuples) and string-keyed mappings. :func:`canonicalize`
turns it into a :class:`CanonicalKey`: a hashable tuple of *tagged
segments* plus a deterministic JSON text form.

* Mappings are order-independent: their fields are sorted by name.
* Sequences are order-dependent.
* Integral floats fold to ints, so ``1`` and ``1.0`` name the same query.
* A bare scalar is a one-segment key, so ``"posts"`` and ``["posts"]`` are
  the same key.

Anything else (sets, arbitrary objects, non-string mapping keys, NaN)
raises :class:`~querycache.exceptions.ConfigurationError`.

Example::

    >>> canonicalize(["posts", {"page": 2, "limit": 3}]).text
    '["posts",{"limit":3,"page":2}]'
    >>> is_prefix_of(canonicalize(["posts"]), canonicalize(["posts", 2]))
    True
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import Any

from querycache.exceptions import ConfigurationError

NULL = "null"
BOOL = "bool"
NUMBER = "number"
STRING = "string"
SEQ = "seq"
RECORD = "record"

Segment = tuple[str, Any]


class CanonicalKey:
    """Normalised, hashable form of a query identifier.

    Two keys are equal exactly when their identifiers are structurally
    equal. The :attr:`text` form is stable across processes and is what
    the inspector and log lines print.
    """

    __slots__ = ("segments", "text")

    def __init__(self, segments: tuple[Segment, ...]) -> None:
        self.segments = segments
        plain = [_to_plain(segment) for segment in segments]
        self.text = json.dumps(plain, sort_keys=True, separators=(",", ":"))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CanonicalKey):
            return NotImplemented
        return self.segments == other.segments

    def __hash__(self) -> int:
        return hash(self.segments)

    def __repr__(self) -> str:
        return f"CanonicalKey({self.text})"

    def __len__(self) -> int:
        return len(self.segments)

    def __str__(self) -> str:
        return self.text

    def is_prefix_of(self, other: CanonicalKey) -> bool:
        """Return ``True`` when *other* starts with this key. See :func:`is_prefix_of`."""
        return is_prefix_of(self, other)


def canonicalize(identifier: Any) -> CanonicalKey:
    """Normalise *identifier* into a :class:`CanonicalKey`.

    Passing an existing :class:`CanonicalKey` returns it unchanged.

    Raises:
        ConfigurationError: If the identifier contains an unsupported value.
    """
    if isinstance(identifier, CanonicalKey):
        return identifier
    if isinstance(identifier, (list, tuple)):
        segments = tuple(
            _encode(item, f"[{index}]") for index, item in enumerate(identifier)
        )
    else:
        segments = (_encode(identifier, "[0]"),)
    return CanonicalKey(segments)


def is_prefix_of(partial: CanonicalKey, key: CanonicalKey) -> bool:
    """Return ``True`` when *key* belongs to the family named by *partial*.

    The top-level segments of *partial* must be a positional prefix of
    *key*'s. Inside a segment, mappings match when every field of the
    partial mapping matches the same field of the key's mapping, so
    ``["todos", {"done": True}]`` matches
    ``["todos", {"done": True, "page": 3}]``. Sequences match by prefix and
    scalars by equality.
    """
    if len(partial.segments) > len(key.segments):
        return False
    return all(
        _segment_matches(p, k) for p, k in zip(partial.segments, key.segments)
    )


def matches_key(partial: CanonicalKey, key: CanonicalKey, exact: bool = False) -> bool:
    """Match *key* against *partial*, exactly or by :func:`is_prefix_of`."""
    if exact:
        return partial == key
    return is_prefix_of(partial, key)


# ------------------------------------------------------------------ #
# Private helpers
# ------------------------------------------------------------------ #


def _encode(value: Any, path: str) -> Segment:
    """Encode one identifier value as a tagged segment."""
    if value is None:
        return (NULL, None)
    if isinstance(value, bool):
        return (BOOL, bool(value))
    if isinstance(value, int):
        return (NUMBER, int(value))
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ConfigurationError(f"Query key value at {path} is not a finite number")
        return (NUMBER, int(value) if value.is_integer() else float(value))
    if isinstance(value, str):
        return (STRING, str.__str__(value))
    if isinstance(value, (list, tuple)):
        return (
            SEQ,
            tuple(_encode(item, f"{path}[{i}]") for i, item in enumerate(value)),
        )
    if isinstance(value, Mapping):
        fields = []
        for name, item in value.items():
            if not isinstance(name, str):
                raise ConfigurationError(
                    f"Query key mapping at {path} has a non-string field name: {name!r}"
                )
            fields.append((str.__str__(name), _encode(item, f"{path}.{name}")))
        fields.sort(key=lambda pair: pair[0])
        return (RECORD, tuple(fields))
    raise ConfigurationError(
        f"Unsupported query key value at {path}: {type(value).__name__}"
    )


def _segment_matches(partial: Segment, actual: Segment) -> bool:
    p_tag, p_value = partial
    a_tag, a_value = actual
    if p_tag == RECORD and a_tag == RECORD:
        fields = dict(a_value)
        return all(
            name in fields and _segment_matches(item, fields[name])
            for name, item in p_value
        )
    if p_tag == SEQ and a_tag == SEQ:
        if len(p_value) > len(a_value):
            return False
        return all(_segment_matches(p, a) for p, a in zip(p_value, a_value))
    return partial == actual


def _to_plain(segment: Segment) -> Any:
    """Convert a tagged segment back to JSON-compatible data."""
    tag, value = segment
    if tag == SEQ:
        return [_to_plain(item) for item in value]
    if tag == RECORD:
        return {name: _to_plain(item) for name, item in value}
    return value
