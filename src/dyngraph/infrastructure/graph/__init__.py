from ._executor import GraphExecutor
from ._functional import Functional
from ._graph import DynamicGraph
from ._tape import Tape, TapeEntry
from ._variable import GraphVariable

__all__ = [
    "GraphExecutor",
    "Functional",
    "DynamicGraph",
    "Tape",
    "TapeEntry",
    "GraphVariable",
]
