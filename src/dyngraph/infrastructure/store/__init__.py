from ._codec import ndarray_to_row, row_to_ndarray
from ._store import OpenFlag, Store

__all__ = [
    "ndarray_to_row",
    "row_to_ndarray",
    "OpenFlag",
    "Store",
]
