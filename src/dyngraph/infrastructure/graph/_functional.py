"""
Functional operations on graph variables and replica groups.

Every function accepts either single `GraphVariable`s or `TensorGroup`s of
variables (all arguments of one call must use the same form) and returns
the same form. Operations run through the owning graph's `GraphExecutor`,
so they are recorded for backward when gradients are enabled.

In-place helpers (`full`, `lerp`, `clamp`) write into their first argument
and are not recorded.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple, Union

from ...domain._command import Command, CommandKind
from ...domain._errors import ValidationError
from ...domain.device._device import as_device


def _executor(*xs: Any):
    for x in xs:
        if x is not None:
            return x.graph.executor
    raise ValidationError("At least one input is required.")


def _one(cmd: Command, *inputs: Any, stream: Any = None):
    return _executor(*inputs).exec(cmd, list(inputs), 1, stream=stream)[0]


class Functional:
    """Namespace of graph operations."""

    @staticmethod
    def matmul(a, b, bias=None, *, transpose_a: bool = False, transpose_b: bool = False, stream=None):
        """General matrix multiply ``a @ b (+ bias)``."""
        params = {}
        if transpose_a:
            params["transpose_a"] = True
        if transpose_b:
            params["transpose_b"] = True
        cmd = Command(CommandKind.GEMM, params)
        if bias is None:
            return _one(cmd, a, b, stream=stream)
        return _one(cmd, a, b, bias, stream=stream)

    @staticmethod
    def add(a, b, p: float = 1.0, q: float = 1.0, stream=None):
        """Weighted sum ``p * a + q * b`` (NumPy broadcasting of `b`)."""
        return _one(Command(CommandKind.ADD, {"p": float(p), "q": float(q)}), a, b, stream=stream)

    @staticmethod
    def sub(a, b, stream=None):
        return Functional.add(a, b, 1.0, -1.0, stream=stream)

    @staticmethod
    def mul(*inputs, stream=None):
        """Element-wise product of same-shaped inputs."""
        return _one(Command(CommandKind.EWPROD), *inputs, stream=stream)

    @staticmethod
    def sum(*inputs, stream=None):
        """Element-wise sum of same-shaped inputs."""
        return _one(Command(CommandKind.EWSUM), *inputs, stream=stream)

    @staticmethod
    def scale(x, a: float, stream=None):
        return _one(Command(CommandKind.SCALAR_MUL, {"a": float(a)}), x, stream=stream)

    @staticmethod
    def relu(x, stream=None):
        return _one(Command(CommandKind.RELU), x, stream=stream)

    @staticmethod
    def sigmoid(x, stream=None):
        return _one(Command(CommandKind.SIGMOID), x, stream=stream)

    @staticmethod
    def clamped(x, min: Optional[float] = None, max: Optional[float] = None, stream=None):
        """Clamped copy of `x`; at least one bound is required."""
        return _one(_clamp_command(min, max), x, stream=stream)

    @staticmethod
    def reduce_sum(x, axis: Union[None, int, Sequence[int]] = None, stream=None):
        return _one(Command(CommandKind.REDUCE_SUM, _axis_params(axis)), x, stream=stream)

    @staticmethod
    def reduce_mean(x, axis: Union[None, int, Sequence[int]] = None, stream=None):
        return _one(Command(CommandKind.REDUCE_MEAN, _axis_params(axis)), x, stream=stream)

    @staticmethod
    def mse_loss(pred, target, stream=None):
        """Mean squared error, a one-element result."""
        return _one(Command(CommandKind.MSE), pred, target, stream=stream)

    @staticmethod
    def transfer(x, device, stream=None):
        """Copy of `x` placed on `device`."""
        cmd = Command(CommandKind.DATA_TRANSFER, {"device": str(as_device(device))})
        return _one(cmd, x, stream=stream)

    @staticmethod
    def converted(x, dtype, stream=None):
        """Copy of `x` converted to element type `dtype`."""
        cmd = Command(CommandKind.DATATYPE_CONVERSION, {"dtype": dtype.name})
        return _one(cmd, x, stream=stream)

    # in place

    @staticmethod
    def full(x, value: float = 0, stream=None):
        """Fill `x` with `value`."""
        _executor(x).exec_into(Command(CommandKind.SET, {"value": value}), [], [x], stream=stream)
        return x

    @staticmethod
    def lerp(x, weight: float, to, stream=None):
        """``x <- (1 - weight) * x + weight * to``."""
        if not 0.0 <= weight <= 1.0:
            raise ValidationError(f"lerp weight must be in [0, 1], got {weight}")
        cmd = Command(CommandKind.ADD, {"p": 1.0 - float(weight), "q": float(weight)})
        _executor(x, to).exec_into(cmd, [x, to], [x], stream=stream)
        return x

    @staticmethod
    def clamp(x, min: Optional[float] = None, max: Optional[float] = None, stream=None):
        """Clamp `x` in place."""
        _executor(x).exec_into(_clamp_command(min, max), [x], [x], stream=stream)
        return x


def _clamp_command(lo: Optional[float], hi: Optional[float]) -> Command:
    if lo is None and hi is None:
        raise ValidationError("clamp requires at least one of min/max.")
    if lo is not None and hi is not None and lo > hi:
        raise ValidationError(f"clamp min {lo} is greater than max {hi}.")
    params = {}
    if lo is not None:
        params["min"] = float(lo)
    if hi is not None:
        params["max"] = float(hi)
    return Command(CommandKind.CLAMP, params)


def _axis_params(axis: Union[None, int, Sequence[int]]) -> dict:
    if axis is None:
        return {}
    if isinstance(axis, int):
        return {"axis": axis}
    axes: Tuple[int, ...] = tuple(int(a) for a in axis)
    return {"axis": axes}
