"""
Native command descriptors.

A `Command` is an immutable description of work for the native runtime: a
`CommandKind` plus a read-only parameter mapping (e.g. transpose flags for
GEMM, the fill value for SET, or the hyperparameters of a minimizer).

Minimizers (update rules such as SGD or Adam) are commands too, so an
optimizer can hand one to a model (`set_minimizer`) or to the runtime
(`apply_gradients`) without a separate type.

`Hint` is passed through to kernels untouched; it carries stride/border
information for kernels that need it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Tuple


class CommandKind(Enum):
    """Kinds of commands understood by the runtime."""

    NOOP = "noop"
    DATA_TRANSFER = "data_transfer"
    FORMAT_TRANSFORM = "format_transform"
    DATATYPE_CONVERSION = "datatype_conversion"
    SET = "set"
    GEMM = "gemm"
    EWSUM = "ewsum"
    EWPROD = "ewprod"
    SCALAR_MUL = "scalar_mul"
    ADD = "add"
    CLAMP = "clamp"
    RELU = "relu"
    SIGMOID = "sigmoid"
    REDUCE_SUM = "reduce_sum"
    REDUCE_MEAN = "reduce_mean"
    MSE = "mse"
    SGD = "sgd"
    ADAM = "adam"

    @property
    def is_minimizer(self) -> bool:
        return self in (CommandKind.SGD, CommandKind.ADAM, CommandKind.NOOP)


@dataclass(frozen=True)
class Command:
    """
    Immutable command descriptor.

    Parameters
    ----------
    kind : CommandKind
        Which kernel to run.
    params : Mapping[str, Any]
        Kernel parameters. Stored as a read-only mapping.

    Notes
    -----
    Commands compare by value, so two minimizers with identical
    hyperparameters are equal.
    """

    kind: CommandKind
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Command):
            return NotImplemented
        return self.kind is other.kind and dict(self.params) == dict(other.params)

    def __hash__(self) -> int:
        return hash((self.kind, tuple(sorted(self.params.items()))))

    def __repr__(self) -> str:
        args = ", ".join(f"{k}={v!r}" for k, v in sorted(self.params.items()))
        return f"Command({self.kind.name}{', ' if args else ''}{args})"

    @property
    def name(self) -> str:
        return self.kind.name

    def get(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)

    def with_params(self, **updates: Any) -> "Command":
        """Return a copy of this command with some parameters replaced."""
        merged = dict(self.params)
        merged.update(updates)
        return Command(self.kind, merged)


def noop() -> Command:
    """Return the no-op command (also the no-op minimizer)."""
    return Command(CommandKind.NOOP)


@dataclass(frozen=True)
class Hint:
    """
    Pass-through execution hint (stride and border per spatial dimension).
    """

    stride: Tuple[int, ...] = ()
    border_begin: Tuple[int, ...] = ()
    border_end: Tuple[int, ...] = ()


NO_HINT = Hint()
