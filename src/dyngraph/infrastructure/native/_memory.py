"""
Device memory allocation and lifetime management.

This module defines the allocator layer of the reference runtime:

- `DeviceBuffer`: one contiguous allocation on a device. The bytes are held
  in a NumPy `uint8` array regardless of the device; "device memory" is a
  matter of accounting and of which operations the tensor layer permits.
- `DeviceAllocator`: per-device, byte-accounted allocator with an optional
  capacity. Requests that do not fit raise `AllocationError`.

Lifetime
--------
A buffer is returned to its allocator exactly once: either deterministically
through `free()` or, as a safety net, by a `weakref.finalize` callback when
the buffer object is garbage collected. The finalizer captures only the
allocator and the byte count, never the buffer itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional
import threading
import weakref

import numpy as np

from ...domain._errors import AllocationError
from ...domain.device._device import Device


@dataclass(eq=False)
class DeviceBuffer:
    """
    A single contiguous allocation owned by a root storage.

    Attributes
    ----------
    device : Device
        Device this allocation belongs to.
    data : np.ndarray
        Flat `uint8` array holding the bytes.
    nbytes : int
        Size of the allocation in bytes.
    version : int
        Write counter, bumped whenever a command or accessor writes into
        the allocation. Recorded operations compare it at backward time.
    """

    device: Device
    data: np.ndarray
    nbytes: int
    version: int = 0
    _finalizer: Optional[weakref.finalize] = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        return self._finalizer is not None and self._finalizer.alive

    def touch(self) -> None:
        self.version += 1

    def free(self) -> None:
        """
        Return the allocation to its allocator (idempotent).
        """
        if self._finalizer is not None and self._finalizer.alive:
            self._finalizer()


class DeviceAllocator:
    """
    Byte-accounted allocator for one device.

    Parameters
    ----------
    device : Device
        The device served by this allocator.
    capacity : Optional[int]
        Maximum number of bytes in use at any time. None means unlimited.

    Notes
    -----
    Accounting updates are protected by an internal lock so buffers released
    from a stream worker thread are accounted correctly.
    """

    def __init__(self, device: Device, capacity: Optional[int] = None) -> None:
        self.device = device
        self.capacity = None if capacity is None else int(capacity)
        self._in_use = 0
        self._live = 0
        self._lock = threading.Lock()

    @property
    def bytes_in_use(self) -> int:
        """Number of bytes currently allocated."""
        with self._lock:
            return self._in_use

    @property
    def live_buffers(self) -> int:
        """Number of buffers not yet returned."""
        with self._lock:
            return self._live

    def allocate(self, nbytes: int) -> DeviceBuffer:
        """
        Allocate `nbytes` bytes on this device.

        Raises
        ------
        AllocationError
            If the capacity would be exceeded or the host cannot provide the
            memory.
        """
        nbytes = int(nbytes)
        if nbytes < 0:
            raise ValueError(f"nbytes must be >= 0, got {nbytes}")
        with self._lock:
            if self.capacity is not None and self._in_use + nbytes > self.capacity:
                raise AllocationError(
                    str(self.device),
                    nbytes,
                    f"{self._in_use} of {self.capacity} bytes already in use.",
                )
            self._in_use += nbytes
            self._live += 1
        try:
            data = np.zeros(nbytes, dtype=np.uint8)
        except MemoryError:
            self._release(nbytes)
            raise AllocationError(str(self.device), nbytes) from None

        buf = DeviceBuffer(device=self.device, data=data, nbytes=nbytes)
        buf._finalizer = weakref.finalize(buf, self._release, nbytes)
        return buf

    def _release(self, nbytes: int) -> None:
        with self._lock:
            self._in_use -= nbytes
            self._live -= 1


class MemoryManager:
    """
    Registry of allocators, one per device, created on demand.
    """

    def __init__(self, capacity: Optional[int] = None) -> None:
        self._capacity = capacity
        self._allocators: Dict[Device, DeviceAllocator] = {}
        self._lock = threading.Lock()

    def allocator(self, device: Device) -> DeviceAllocator:
        with self._lock:
            alloc = self._allocators.get(device)
            if alloc is None:
                alloc = DeviceAllocator(device, self._capacity)
                self._allocators[device] = alloc
            return alloc

    def allocate(self, device: Device, nbytes: int) -> DeviceBuffer:
        return self.allocator(device).allocate(nbytes)

    def bytes_in_use(self, device: Device) -> int:
        return self.allocator(device).bytes_in_use
