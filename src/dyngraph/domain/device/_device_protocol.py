"""
Device abstraction contracts for dyngraph.

This module defines a duck-typed `DeviceLike` protocol that represents a
device descriptor without coupling to the concrete `Device` class, so the
allocator and stream layers can accept any object with the same surface.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class DeviceLike(Protocol):
    """
    Duck-typed device contract.

    Any object that provides these members can be used as a device descriptor
    within the framework, regardless of its concrete class identity.
    """

    type: object
    index: Optional[int]

    def is_cpu(self) -> bool: ...
    def is_gpu(self) -> bool: ...
    def __str__(self) -> str: ...
