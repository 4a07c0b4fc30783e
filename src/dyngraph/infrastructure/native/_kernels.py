"""
NumPy kernels for the reference runtime.

Every `CommandKind` that the runtime can execute is registered here as a
`Kernel` with up to three entry points:

- `infer(cmd, metas)`: output metadata (shape, dtype, format, device) from
  input metadata, used to allocate outputs *before* dispatch
- `forward(cmd, inputs, outputs)`: compute into pre-allocated output arrays
- `backward(cmd, grads, inputs, outputs)`: gradients w.r.t. each input given
  gradients w.r.t. each output (None entries mean "no gradient")

Kernels see plain (possibly strided) NumPy arrays; device placement is
handled by the runtime and the tensor layer.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from ...domain._command import Command, CommandKind
from ...domain._errors import ValidationError
from ...domain._types import DataType, Shape, TensorFormat
from ...domain.device._device import Device

Array = np.ndarray


@dataclass(frozen=True)
class TensorMeta:
    """
    Metadata describing a tensor argument or result.
    """

    shape: Shape
    dtype: DataType
    format: TensorFormat
    device: Device


InferFn = Callable[[Command, Sequence[Optional[TensorMeta]]], List[TensorMeta]]
ForwardFn = Callable[[Command, Sequence[Optional[Array]], Sequence[Array]], None]
BackwardFn = Callable[
    [Command, Sequence[Optional[Array]], Sequence[Optional[Array]], Sequence[Array]],
    List[Optional[Array]],
]


@dataclass(frozen=True)
class Kernel:
    kind: CommandKind
    infer: InferFn
    forward: ForwardFn
    backward: Optional[BackwardFn] = None

    @property
    def differentiable(self) -> bool:
        return self.backward is not None


_KERNELS: Dict[CommandKind, Kernel] = {}


def register_kernel(
    kind: CommandKind,
    *,
    infer: InferFn,
    backward: Optional[BackwardFn] = None,
) -> Callable[[ForwardFn], ForwardFn]:
    """
    Decorator registering a forward function (and its companions) for `kind`.
    """

    def deco(forward: ForwardFn) -> ForwardFn:
        _KERNELS[kind] = Kernel(kind=kind, infer=infer, forward=forward, backward=backward)
        return forward

    return deco


def get_kernel(kind: CommandKind) -> Kernel:
    kernel = _KERNELS.get(kind)
    if kernel is None:
        raise ValidationError(f"No kernel registered for command {kind.name}.")
    return kernel


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _require(metas: Sequence[Optional[TensorMeta]], count: int, op: str) -> List[TensorMeta]:
    if len(metas) < count or any(m is None for m in metas[:count]):
        raise ValidationError(f"{op} requires {count} bound input(s), got {len(metas)}.")
    return list(metas[:count])  # type: ignore[arg-type]


def _same_as_first(cmd: Command, metas: Sequence[Optional[TensorMeta]]) -> List[TensorMeta]:
    return _require(metas, 1, cmd.name)[:1]


def _check_same_shape(cmd: Command, metas: Sequence[Optional[TensorMeta]]) -> List[TensorMeta]:
    ms = _require(metas, len(metas), cmd.name)
    for m in ms[1:]:
        if m.shape != ms[0].shape:
            raise ValidationError(
                f"{cmd.name} requires identical input shapes, got {ms[0].shape} vs {m.shape}."
            )
    return ms[:1]


def _unbroadcast(grad: Array, shape: Shape) -> Array:
    """Sum `grad` down to `shape` (inverse of NumPy broadcasting)."""
    g = grad
    while g.ndim > len(shape):
        g = g.sum(axis=0)
    for axis, dim in enumerate(shape):
        if dim == 1 and g.shape[axis] != 1:
            g = g.sum(axis=axis, keepdims=True)
    return g.reshape(shape)


def _permutation(src: TensorFormat, dst: TensorFormat) -> Optional[List[int]]:
    if src is dst:
        return None
    return [src.name.index(c) for c in dst.name]


# ---------------------------------------------------------------------------
# NOOP
# ---------------------------------------------------------------------------


@register_kernel(CommandKind.NOOP, infer=lambda cmd, metas: [])
def _noop_forward(cmd, inputs, outputs) -> None:
    return None


# ---------------------------------------------------------------------------
# DATA_TRANSFER / FORMAT_TRANSFORM / DATATYPE_CONVERSION
# ---------------------------------------------------------------------------


def _transfer_infer(cmd, metas):
    device = cmd.get("device")
    ms = _require(metas, len(metas), cmd.name)
    if device is None:
        return ms
    return [replace(m, device=Device(device)) for m in ms]


def _transfer_backward(cmd, grads, inputs, outputs):
    return [None if g is None else np.array(g, copy=True) for g in grads]


@register_kernel(CommandKind.DATA_TRANSFER, infer=_transfer_infer, backward=_transfer_backward)
def _data_transfer_forward(cmd, inputs, outputs) -> None:
    for src, dst in zip(inputs, outputs):
        if src is None:
            continue
        if src.shape != dst.shape:
            if src.size != dst.size:
                raise ValidationError(
                    f"DATA_TRANSFER size mismatch: {src.shape} -> {dst.shape}."
                )
            src = src.reshape(dst.shape)
        np.copyto(dst, src, casting="unsafe")


def _format_transform_infer(cmd, metas):
    out = []
    dst_fmt = cmd.get("format")
    for m in _require(metas, len(metas), cmd.name):
        fmt = m.format if dst_fmt is None else TensorFormat[dst_fmt]
        perm = _permutation(m.format, fmt) if len(m.shape) == 4 else None
        shape = m.shape if perm is None else tuple(m.shape[i] for i in perm)
        out.append(replace(m, shape=shape, format=fmt))
    return out


def _format_transform_backward(cmd, grads, inputs, outputs):
    result: List[Optional[Array]] = []
    for g, x in zip(grads, inputs):
        if g is None or x is None:
            result.append(None)
            continue
        if g.shape == x.shape:
            result.append(np.array(g, copy=True))
        else:
            # Undo the forward permutation by matching axes sizes.
            result.append(np.array(g.reshape(x.shape) if g.size == x.size else g, copy=True))
    return result


@register_kernel(
    CommandKind.FORMAT_TRANSFORM, infer=_format_transform_infer, backward=_format_transform_backward
)
def _format_transform_forward(cmd, inputs, outputs) -> None:
    src_fmt = cmd.get("source_format")
    dst_fmt = cmd.get("format")
    for src, dst in zip(inputs, outputs):
        if src is None:
            continue
        if src.ndim == 4 and src_fmt is not None and dst_fmt is not None:
            perm = _permutation(TensorFormat[src_fmt], TensorFormat[dst_fmt])
            if perm is not None:
                src = np.transpose(src, perm)
        if src.shape != dst.shape:
            raise ValidationError(
                f"FORMAT_TRANSFORM shape mismatch: {src.shape} -> {dst.shape}."
            )
        np.copyto(dst, src, casting="unsafe")


def _dtype_conversion_infer(cmd, metas):
    target = DataType[cmd.get("dtype")]
    return [replace(m, dtype=target) for m in _require(metas, len(metas), cmd.name)]


def _dtype_conversion_backward(cmd, grads, inputs, outputs):
    return [
        None if g is None or x is None else g.astype(x.dtype)
        for g, x in zip(grads, inputs)
    ]


@register_kernel(
    CommandKind.DATATYPE_CONVERSION,
    infer=_dtype_conversion_infer,
    backward=_dtype_conversion_backward,
)
def _dtype_conversion_forward(cmd, inputs, outputs) -> None:
    for src, dst in zip(inputs, outputs):
        if src is not None:
            np.copyto(dst, src, casting="unsafe")


# ---------------------------------------------------------------------------
# SET (fill)
# ---------------------------------------------------------------------------


def _set_infer(cmd, metas):
    if not metas or metas[0] is None:
        raise ValidationError("SET cannot infer an output shape; pass bound outputs.")
    return [metas[0]]


@register_kernel(CommandKind.SET, infer=_set_infer)
def _set_forward(cmd, inputs, outputs) -> None:
    value = cmd.get("value", 0)
    for dst in outputs:
        dst[...] = value


# ---------------------------------------------------------------------------
# GEMM
# ---------------------------------------------------------------------------


def _gemm_operands(cmd, a: Array, b: Array):
    if cmd.get("transpose_a", False):
        a = np.swapaxes(a, -1, -2)
    if cmd.get("transpose_b", False):
        b = np.swapaxes(b, -1, -2)
    return a, b


def _gemm_infer(cmd, metas):
    ma, mb = _require(metas, 2, cmd.name)
    a_shape, b_shape = list(ma.shape), list(mb.shape)
    if len(a_shape) < 2 or len(b_shape) < 2:
        raise ValidationError(
            f"GEMM requires operands of rank >= 2, got {ma.shape} and {mb.shape}."
        )
    if cmd.get("transpose_a", False):
        a_shape[-1], a_shape[-2] = a_shape[-2], a_shape[-1]
    if cmd.get("transpose_b", False):
        b_shape[-1], b_shape[-2] = b_shape[-2], b_shape[-1]
    if a_shape[-1] != b_shape[-2]:
        raise ValidationError(
            f"GEMM inner dimensions differ: {tuple(a_shape)} @ {tuple(b_shape)}."
        )
    batch = np.broadcast_shapes(tuple(a_shape[:-2]), tuple(b_shape[:-2]))
    shape = tuple(batch) + (a_shape[-2], b_shape[-1])
    if len(metas) > 2 and metas[2] is not None:
        bias = metas[2]
        if bias.shape[-1] != shape[-1]:
            raise ValidationError(
                f"GEMM bias of shape {bias.shape} does not match output {shape}."
            )
    return [replace(ma, shape=shape)]


def _gemm_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    a, b = inputs[0], inputs[1]
    bias = inputs[2] if len(inputs) > 2 else None
    if g is None:
        return [None] * len(inputs)
    ea, eb = _gemm_operands(cmd, a, b)
    ga = np.matmul(g, np.swapaxes(eb, -1, -2))
    gb = np.matmul(np.swapaxes(ea, -1, -2), g)
    if cmd.get("transpose_a", False):
        ga = np.swapaxes(ga, -1, -2)
    if cmd.get("transpose_b", False):
        gb = np.swapaxes(gb, -1, -2)
    result: List[Optional[Array]] = [
        _unbroadcast(ga, a.shape).astype(a.dtype),
        _unbroadcast(gb, b.shape).astype(b.dtype),
    ]
    if len(inputs) > 2:
        result.append(None if bias is None else _unbroadcast(g, bias.shape).astype(bias.dtype))
    return result


@register_kernel(CommandKind.GEMM, infer=_gemm_infer, backward=_gemm_backward)
def _gemm_forward(cmd, inputs, outputs) -> None:
    a, b = _gemm_operands(cmd, inputs[0], inputs[1])
    out = np.matmul(a, b)
    if len(inputs) > 2 and inputs[2] is not None:
        out = out + inputs[2]
    np.copyto(outputs[0], out, casting="unsafe")


# ---------------------------------------------------------------------------
# Element-wise
# ---------------------------------------------------------------------------


def _ewsum_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    return [None if g is None else np.array(g, copy=True) for _ in inputs]


@register_kernel(CommandKind.EWSUM, infer=_check_same_shape, backward=_ewsum_backward)
def _ewsum_forward(cmd, inputs, outputs) -> None:
    acc = np.array(inputs[0], copy=True)
    for x in inputs[1:]:
        acc = acc + x
    np.copyto(outputs[0], acc, casting="unsafe")


def _ewprod_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    if g is None:
        return [None] * len(inputs)
    result = []
    for i in range(len(inputs)):
        acc = np.array(g, copy=True)
        for j, x in enumerate(inputs):
            if j != i:
                acc = acc * x
        result.append(acc.astype(inputs[i].dtype))
    return result


@register_kernel(CommandKind.EWPROD, infer=_check_same_shape, backward=_ewprod_backward)
def _ewprod_forward(cmd, inputs, outputs) -> None:
    acc = np.array(inputs[0], copy=True)
    for x in inputs[1:]:
        acc = acc * x
    np.copyto(outputs[0], acc, casting="unsafe")


def _scalar_mul_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    a = cmd.get("a", 1.0)
    return [None if g is None else (g * a).astype(inputs[0].dtype)]


@register_kernel(CommandKind.SCALAR_MUL, infer=_same_as_first, backward=_scalar_mul_backward)
def _scalar_mul_forward(cmd, inputs, outputs) -> None:
    np.copyto(outputs[0], inputs[0] * cmd.get("a", 1.0), casting="unsafe")


def _add_infer(cmd, metas):
    ma, mb = _require(metas, 2, cmd.name)
    try:
        shape = np.broadcast_shapes(ma.shape, mb.shape)
    except ValueError:
        raise ValidationError(
            f"ADD operands do not broadcast: {ma.shape} and {mb.shape}."
        ) from None
    return [replace(ma, shape=tuple(shape))]


def _add_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    if g is None:
        return [None, None]
    p, q = cmd.get("p", 1.0), cmd.get("q", 1.0)
    a, b = inputs
    return [
        _unbroadcast(g * p, a.shape).astype(a.dtype),
        _unbroadcast(g * q, b.shape).astype(b.dtype),
    ]


@register_kernel(CommandKind.ADD, infer=_add_infer, backward=_add_backward)
def _add_forward(cmd, inputs, outputs) -> None:
    p, q = cmd.get("p", 1.0), cmd.get("q", 1.0)
    np.copyto(outputs[0], p * inputs[0] + q * inputs[1], casting="unsafe")


def _clamp_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    if g is None:
        return [None]
    x = inputs[0]
    lo, hi = cmd.get("min"), cmd.get("max")
    mask = np.ones(x.shape, dtype=bool)
    if lo is not None:
        mask &= x >= lo
    if hi is not None:
        mask &= x <= hi
    return [(g * mask).astype(x.dtype)]


@register_kernel(CommandKind.CLAMP, infer=_same_as_first, backward=_clamp_backward)
def _clamp_forward(cmd, inputs, outputs) -> None:
    lo, hi = cmd.get("min"), cmd.get("max")
    if lo is None and hi is None:
        raise ValidationError("CLAMP requires at least one of min/max.")
    np.copyto(outputs[0], np.clip(inputs[0], lo, hi), casting="unsafe")


def _relu_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    return [None if g is None else (g * (inputs[0] > 0)).astype(inputs[0].dtype)]


@register_kernel(CommandKind.RELU, infer=_same_as_first, backward=_relu_backward)
def _relu_forward(cmd, inputs, outputs) -> None:
    np.copyto(outputs[0], np.maximum(inputs[0], 0), casting="unsafe")


def _sigmoid_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    if g is None:
        return [None]
    y = outputs[0]
    return [(g * y * (1.0 - y)).astype(inputs[0].dtype)]


@register_kernel(CommandKind.SIGMOID, infer=_same_as_first, backward=_sigmoid_backward)
def _sigmoid_forward(cmd, inputs, outputs) -> None:
    x = inputs[0].astype(np.float64)
    np.copyto(outputs[0], 1.0 / (1.0 + np.exp(-x)), casting="unsafe")


# ---------------------------------------------------------------------------
# Reductions and losses
# ---------------------------------------------------------------------------


def _reduce_axes(cmd, ndim: int):
    axis = cmd.get("axis")
    if axis is None:
        return tuple(range(ndim))
    axes = (axis,) if isinstance(axis, int) else tuple(axis)
    for ax in axes:
        if not -ndim <= ax < ndim:
            raise ValidationError(f"Reduction axis {ax} out of range for rank {ndim}.")
    return tuple(ax % ndim for ax in axes)


def _reduce_infer(cmd, metas):
    (m,) = _require(metas, 1, cmd.name)
    axes = _reduce_axes(cmd, len(m.shape))
    shape = tuple(1 if i in axes else d for i, d in enumerate(m.shape))
    return [replace(m, shape=shape)]


def _reduce_sum_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    x = inputs[0]
    return [None if g is None else np.broadcast_to(g, x.shape).astype(x.dtype)]


def _reduce_mean_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    if g is None:
        return [None]
    x = inputs[0]
    axes = _reduce_axes(cmd, x.ndim)
    count = 1
    for ax in axes:
        count *= x.shape[ax]
    return [(np.broadcast_to(g, x.shape) / count).astype(x.dtype)]


@register_kernel(CommandKind.REDUCE_SUM, infer=_reduce_infer, backward=_reduce_sum_backward)
def _reduce_sum_forward(cmd, inputs, outputs) -> None:
    axes = _reduce_axes(cmd, inputs[0].ndim)
    np.copyto(outputs[0], inputs[0].sum(axis=axes, keepdims=True), casting="unsafe")


@register_kernel(CommandKind.REDUCE_MEAN, infer=_reduce_infer, backward=_reduce_mean_backward)
def _reduce_mean_forward(cmd, inputs, outputs) -> None:
    axes = _reduce_axes(cmd, inputs[0].ndim)
    np.copyto(outputs[0], inputs[0].mean(axis=axes, keepdims=True), casting="unsafe")


def _mse_infer(cmd, metas):
    mp, mt = _require(metas, 2, cmd.name)
    if mp.shape != mt.shape:
        raise ValidationError(f"MSE requires equal shapes, got {mp.shape} vs {mt.shape}.")
    return [replace(mp, shape=(1,))]


def _mse_backward(cmd, grads, inputs, outputs):
    g = grads[0]
    if g is None:
        return [None, None]
    p, t = inputs
    d = (2.0 / p.size) * (p - t) * g.reshape(())
    return [d.astype(p.dtype), (-d).astype(t.dtype)]


@register_kernel(CommandKind.MSE, infer=_mse_infer, backward=_mse_backward)
def _mse_forward(cmd, inputs, outputs) -> None:
    p, t = inputs
    outputs[0][...] = np.mean((p - t) ** 2)
