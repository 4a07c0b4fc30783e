from ._model import Model, ModelParameters
from ._dense import Dense
from ._sequential import Sequential

__all__ = [
    "Model",
    "ModelParameters",
    "Dense",
    "Sequential",
]
