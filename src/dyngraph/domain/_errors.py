"""
Error taxonomy for dyngraph.

This module defines the exceptions raised by the tensor, graph, optimizer and
store layers. The hierarchy separates *caller bugs* (broken invariants such as
out-of-range views, inconsistent replica groups, or tensors mixed across graph
contexts) from *runtime conditions* that a caller may reasonably handle
(device memory exhaustion, kernel failures).

Notes
-----
- Invariant violations abort the operation before any output is mutated.
- Store lookups never raise for missing or malformed keys; they return a
  "not found" signal instead (see `StoreReadWarning`).
"""

from __future__ import annotations

from typing import Optional


class ValidationError(ValueError):
    """
    Raised when a shape, stride, range or dtype precondition is violated.

    These conditions indicate a programming error in the caller rather than an
    expected runtime failure.
    """


class IndexOutOfRangeError(ValidationError, IndexError):
    """
    Raised when an index, range, offset or view window falls outside the
    logical bounds of a storage.
    """


class GroupConsistencyError(ValidationError):
    """
    Raised when the replicas of a tensor group disagree on an attribute that
    must be identical across replicas (shape, format, strides, dtype, ...).

    Attributes
    ----------
    attribute : str
        Name of the attribute that differs.
    """

    def __init__(self, attribute: str, first: object, other: object) -> None:
        super().__init__(
            f"Group replicas disagree on '{attribute}': {first!r} vs {other!r}."
        )
        self.attribute = attribute


class CrossGraphError(RuntimeError):
    """
    Raised when tensors owned by different graph contexts are mixed in one
    operation.
    """

    def __init__(self, op: str) -> None:
        super().__init__(f"{op}: all inputs must belong to the same graph context.")
        self.op = op


class InvalidOperationError(RuntimeError):
    """
    Raised when an operation is not valid for the current state of an object,
    e.g. direct element mutation of a device-resident tensor or enabling
    gradients on a constant.
    """


class DeviceNotSupportedError(RuntimeError):
    """
    Raised when a device that the runtime does not expose is addressed.

    Attributes
    ----------
    op : str
        The name of the operation that was attempted.
    device : str
        String representation of the requested device.
    """

    def __init__(self, op: str, device: str) -> None:
        super().__init__(f"{op} is not available for device '{device}'.")
        self.op = op
        self.device = device


class AllocationError(MemoryError):
    """
    Raised when a device allocator cannot satisfy a request.

    Unlike validation errors this condition is recoverable at the allocation
    call site (e.g. by freeing tensors and retrying).

    Attributes
    ----------
    device : str
        Device on which the allocation was attempted.
    nbytes : int
        Requested size in bytes.
    """

    def __init__(self, device: str, nbytes: int, detail: str = "") -> None:
        msg = f"Out of memory on '{device}' while allocating {nbytes} bytes."
        if detail:
            msg = f"{msg} {detail}"
        super().__init__(msg)
        self.device = device
        self.nbytes = int(nbytes)


class ExecutionError(RuntimeError):
    """
    Raised when the native runtime reports a failure while executing a
    command.

    Attributes
    ----------
    command : str
        Name of the command that failed.
    diagnostic : str
        Diagnostic reported by the native layer.
    """

    def __init__(self, command: str, diagnostic: str) -> None:
        super().__init__(f"Execution of '{command}' failed: {diagnostic}")
        self.command = command
        self.diagnostic = diagnostic


class StoreError(RuntimeError):
    """
    Raised when a parameter store cannot be opened, rejects a statement (for
    example a write to a read-only store) or is used after it has been closed.
    """

    def __init__(self, path: str, detail: Optional[str] = None) -> None:
        msg = f"Parameter store '{path}' is unavailable."
        if detail:
            msg = f"{msg} {detail}"
        super().__init__(msg)
        self.path = path


class StoreReadWarning(UserWarning):
    """
    Emitted when a stored entry exists but cannot be decoded. The read itself
    reports "not found".
    """
