from ._kernels import Kernel, TensorMeta, get_kernel, register_kernel
from ._memory import DeviceAllocator, DeviceBuffer, MemoryManager
from ._minimizers import apply_update, saved_aux_size
from ._runtime import NativeRuntime, default_runtime, set_default_runtime
from ._stream import StreamContext

__all__ = [
    "Kernel",
    "TensorMeta",
    "get_kernel",
    "register_kernel",
    "DeviceAllocator",
    "DeviceBuffer",
    "MemoryManager",
    "apply_update",
    "saved_aux_size",
    "NativeRuntime",
    "default_runtime",
    "set_default_runtime",
    "StreamContext",
]
