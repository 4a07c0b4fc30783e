from ._storage import TensorStorage
from ._tensor import Tensor, reshaped_all
from ._group import TensorGroup

__all__ = [
    "TensorStorage",
    "Tensor",
    "reshaped_all",
    "TensorGroup",
]
