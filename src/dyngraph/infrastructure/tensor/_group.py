"""
Replica groups.

A `TensorGroup` is an ordered collection of tensors (or graph variables), one
per data-parallel replica. Replicas are kept in lock-step: they must agree on
shape, format, strides, element type, device type and constancy. The group
exposes those attributes as if it were a single tensor; every read checks the
other replicas against replica 0 and raises `GroupConsistencyError` on a
mismatch.
"""

from __future__ import annotations

from typing import Any, Generic, Iterator, List, Optional, Sequence, TypeVar

from ...domain._errors import GroupConsistencyError, ValidationError
from ...domain._tensor import IAnyTensor

T = TypeVar("T", bound=IAnyTensor)

_CHECKED = ("shape", "format", "strides", "dtype", "device_type", "is_constant")


def _attr(replica: Any, name: str) -> Any:
    if name == "device_type":
        return replica.device.type
    if name == "is_constant":
        return getattr(replica, "is_constant", False)
    return getattr(replica, name)


class TensorGroup(Generic[T]):
    """
    Ordered group of same-shaped replicas.

    Parameters
    ----------
    replicas : Sequence
        Tensors or graph variables, one per replica. Must be non-empty and
        mutually consistent.

    Raises
    ------
    ValidationError
        If `replicas` is empty.
    GroupConsistencyError
        If the replicas disagree on any lock-step attribute.
    """

    def __init__(self, replicas: Sequence[T]) -> None:
        items = list(replicas)
        if not items:
            raise ValidationError("A group needs at least one replica.")
        self._replicas: List[T] = items
        for name in _CHECKED:
            self._consistent(name)

    def _consistent(self, name: str) -> Any:
        first = _attr(self._replicas[0], name)
        for other in self._replicas[1:]:
            value = _attr(other, name)
            if value != first:
                raise GroupConsistencyError(name, first, value)
        return first

    # sequence protocol
    def __len__(self) -> int:
        return len(self._replicas)

    def __getitem__(self, index: int) -> T:
        return self._replicas[index]

    def __iter__(self) -> Iterator[T]:
        return iter(self._replicas)

    def __repr__(self) -> str:
        return f"TensorGroup(replicas={len(self)}, shape={self.shape}, dtype={self.dtype.name})"

    @property
    def replicas(self) -> List[T]:
        return list(self._replicas)

    @property
    def parallel(self) -> int:
        return len(self._replicas)

    # lock-step attributes
    @property
    def shape(self) -> tuple:
        return self._consistent("shape")

    @property
    def format(self):
        return self._consistent("format")

    @property
    def strides(self) -> tuple:
        return self._consistent("strides")

    @property
    def dtype(self):
        return self._consistent("dtype")

    @property
    def is_constant(self) -> bool:
        return self._consistent("is_constant")

    @property
    def kind(self):
        """Device of replica 0; every replica shares its device type."""
        self._consistent("device_type")
        return self._replicas[0].device

    device = kind

    @property
    def devices(self) -> list:
        return [r.device for r in self._replicas]

    @property
    def graph(self) -> Any:
        return self._consistent("graph")

    @property
    def requires_grad(self) -> bool:
        return self._consistent("requires_grad")

    @requires_grad.setter
    def requires_grad(self, value: bool) -> None:
        for r in self._replicas:
            r.requires_grad = value

    @property
    def grad(self) -> Optional["TensorGroup"]:
        """Group of replica gradients, or None when no replica has one."""
        grads = [getattr(r, "grad", None) for r in self._replicas]
        if all(g is None for g in grads):
            return None
        if any(g is None for g in grads):
            raise GroupConsistencyError("grad", grads[0], None)
        return TensorGroup(grads)

    def reshaped(self, *args: Any, **kwargs: Any) -> "TensorGroup[T]":
        """Reshape every replica independently (see `Tensor.reshaped`)."""
        return TensorGroup([r.reshaped(*args, **kwargs) for r in self._replicas])

    def to_numpy(self) -> list:
        return [r.to_numpy() for r in self._replicas]

    def release(self) -> None:
        for r in self._replicas:
            r.release()
