from ._minimizer import adam, sgd
from ._optimizer import Optimizer, step_all
from ._sgd import SGDOptimizer
from ._adam import AdamOptimizer

__all__ = [
    "adam",
    "sgd",
    "Optimizer",
    "step_all",
    "SGDOptimizer",
    "AdamOptimizer",
]
