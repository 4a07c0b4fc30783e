"""
Subscript parsing for tensor handles.

Tensors accept three subscript forms:

- ``t[i, j, ...]``: one integer per dimension, an element
- ``t[a:b, c:d, ...]``: one slice per dimension, a range view
- ``t[i, j, a:b]``: integers for every dimension but the last, followed by a
  slice, an indexed range view of shape ``(1, ..., 1, b - a)``

Negative integers and slice bounds count from the end of the dimension.
Slices with a step other than 1 are rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

from ...domain._errors import IndexOutOfRangeError, ValidationError


@dataclass(frozen=True)
class Subscript:
    """
    Parsed subscript.

    Exactly one of `indices` (element), `ranges` (range view) or
    `prefix`/`range` (indexed range) describes the selection.
    """

    kind: str
    indices: Tuple[int, ...] = ()
    ranges: Tuple[Tuple[int, int], ...] = ()
    prefix: Tuple[int, ...] = ()
    range: Optional[Tuple[int, int]] = None


def _index(x: Any, size: int, dim: int) -> int:
    i = int(x)
    if i < 0:
        i += size
    if not 0 <= i < size:
        raise IndexOutOfRangeError(f"Index {x} out of range for dimension {dim} of size {size}.")
    return i


def _slice(s: slice, size: int, dim: int) -> Tuple[int, int]:
    if s.step not in (None, 1):
        raise ValidationError(f"Strided slices are not supported, got step {s.step}.")
    lo = 0 if s.start is None else int(s.start)
    hi = size if s.stop is None else int(s.stop)
    if lo < 0:
        lo += size
    if hi < 0:
        hi += size
    if not 0 <= lo < hi <= size:
        raise IndexOutOfRangeError(
            f"Range [{lo}, {hi}) out of bounds for dimension {dim} of size {size}."
        )
    return lo, hi


def parse_subscript(key: Any, shape: Sequence[int]) -> Subscript:
    """
    Resolve `key` against `shape`.

    Raises
    ------
    ValidationError
        If the key does not address every dimension, mixes forms, or uses an
        unsupported element type.
    IndexOutOfRangeError
        If any index or range falls outside its dimension.
    """
    parts = key if isinstance(key, tuple) else (key,)
    rank = len(shape)
    if len(parts) != rank:
        raise ValidationError(f"Expected {rank} subscript(s) for shape {tuple(shape)}, got {len(parts)}.")

    slices = [isinstance(p, slice) for p in parts]
    if all(slices):
        return Subscript(
            "range", ranges=tuple(_slice(p, shape[d], d) for d, p in enumerate(parts))
        )
    if not any(slices):
        return Subscript(
            "element", indices=tuple(_index(p, shape[d], d) for d, p in enumerate(parts))
        )
    if slices[-1] and not any(slices[:-1]):
        prefix = tuple(_index(p, shape[d], d) for d, p in enumerate(parts[:-1]))
        return Subscript(
            "index_range", prefix=prefix, range=_slice(parts[-1], shape[-1], rank - 1)
        )
    raise ValidationError(
        "Mixed subscripts must be integers followed by a single trailing slice."
    )
