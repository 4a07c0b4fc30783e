"""
dyngraph: eager tensor execution with gradient tracking, device-parallel
tensor groups, model/optimizer minimizer synchronization and a SQLite
parameter store.
"""

from .domain import (
    AllocationError,
    Command,
    CommandKind,
    CrossGraphError,
    DataType,
    Device,
    DeviceNotSupportedError,
    ExecutionError,
    GroupConsistencyError,
    IndexOutOfRangeError,
    InvalidOperationError,
    ShapeFormat,
    StoreError,
    StoreReadWarning,
    TensorFormat,
    ValidationError,
)
from .infrastructure import (
    AdamOptimizer,
    Dense,
    DynamicGraph,
    Functional,
    GraphVariable,
    Model,
    ModelParameters,
    NativeRuntime,
    OpenFlag,
    RuntimeConfig,
    SGDOptimizer,
    Sequential,
    Store,
    StreamContext,
    Tensor,
    TensorGroup,
    step_all,
)

__version__ = "0.1.0"

__all__ = [
    "AllocationError",
    "Command",
    "CommandKind",
    "CrossGraphError",
    "DataType",
    "Device",
    "DeviceNotSupportedError",
    "ExecutionError",
    "GroupConsistencyError",
    "IndexOutOfRangeError",
    "InvalidOperationError",
    "ShapeFormat",
    "StoreError",
    "StoreReadWarning",
    "TensorFormat",
    "ValidationError",
    "AdamOptimizer",
    "Dense",
    "DynamicGraph",
    "Functional",
    "GraphVariable",
    "Model",
    "ModelParameters",
    "NativeRuntime",
    "OpenFlag",
    "RuntimeConfig",
    "SGDOptimizer",
    "Sequential",
    "Store",
    "StreamContext",
    "Tensor",
    "TensorGroup",
    "step_all",
]
