from ._errors import (
    AllocationError,
    CrossGraphError,
    DeviceNotSupportedError,
    ExecutionError,
    GroupConsistencyError,
    IndexOutOfRangeError,
    InvalidOperationError,
    StoreError,
    StoreReadWarning,
    ValidationError,
)
from ._types import (
    MAX_DIM,
    DataType,
    ShapeFormat,
    TensorFormat,
    normalize_shape,
    numel,
)
from ._command import NO_HINT, Command, CommandKind, Hint, noop
from ._tensor import IAnyTensor, IGraphTensor
from ._optimizers import IOptimizer
from .device import Device, DeviceType, DeviceLike, as_device

__all__ = [
    "AllocationError",
    "CrossGraphError",
    "DeviceNotSupportedError",
    "ExecutionError",
    "GroupConsistencyError",
    "IndexOutOfRangeError",
    "InvalidOperationError",
    "StoreError",
    "StoreReadWarning",
    "ValidationError",
    "MAX_DIM",
    "DataType",
    "ShapeFormat",
    "TensorFormat",
    "normalize_shape",
    "numel",
    "NO_HINT",
    "Command",
    "CommandKind",
    "Hint",
    "noop",
    "IAnyTensor",
    "IGraphTensor",
    "IOptimizer",
    "Device",
    "DeviceType",
    "DeviceLike",
    "as_device",
]
