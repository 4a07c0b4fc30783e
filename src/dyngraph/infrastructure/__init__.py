from ._config import RuntimeConfig
from .native import NativeRuntime, StreamContext, default_runtime, set_default_runtime
from .tensor import Tensor, TensorGroup, TensorStorage, reshaped_all
from .graph import DynamicGraph, Functional, GraphVariable
from .models import Dense, Model, ModelParameters, Sequential
from .optimizers import AdamOptimizer, Optimizer, SGDOptimizer, step_all
from .store import OpenFlag, Store

__all__ = [
    "RuntimeConfig",
    "NativeRuntime",
    "StreamContext",
    "default_runtime",
    "set_default_runtime",
    "Tensor",
    "TensorGroup",
    "TensorStorage",
    "reshaped_all",
    "DynamicGraph",
    "Functional",
    "GraphVariable",
    "Dense",
    "Model",
    "ModelParameters",
    "Sequential",
    "AdamOptimizer",
    "Optimizer",
    "SGDOptimizer",
    "step_all",
    "OpenFlag",
    "Store",
]
