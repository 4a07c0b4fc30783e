"""
Device abstraction utilities.

This module defines lightweight abstractions for representing the devices a
tensor can reside on:

- `DeviceType`: an enumeration of supported device categories
- `Device`: a concrete device descriptor that validates and normalizes
  user-facing device strings such as "cpu" or "gpu:0"

The descriptor does not allocate or manage any backend resources; memory is
owned by the runtime's per-device allocators.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional
import re


class DeviceType(Enum):
    """
    Enumeration of supported device categories.

    Attributes
    ----------
    CPU : DeviceType
        Host memory.
    GPU : DeviceType
        Accelerator memory, addressed by ordinal.
    """

    CPU = "cpu"
    GPU = "gpu"


class Device:
    """
    Concrete computation device descriptor.

    Parameters
    ----------
    device : str
        Device identifier string. Must be either:
        - "cpu"
        - "gpu:<ordinal>" (or the alias "cuda:<ordinal>"), where <ordinal>
          is a non-negative integer

    Raises
    ------
    ValueError
        If the provided device string does not match the supported formats.

    Notes
    -----
    `__slots__` is used to prevent dynamic attribute creation; instances are
    hashable and compare by (type, ordinal).
    """

    __slots__ = ("type", "index")

    _GPU_PATTERN = re.compile(r"^(?:gpu|cuda):(\d+)$")

    def __init__(self, device: str = "cpu"):
        if isinstance(device, Device):
            self.type = device.type
            self.index = device.index
            return
        if device == "cpu":
            self.type = DeviceType.CPU
            self.index: Optional[int] = None
        else:
            m = self._GPU_PATTERN.match(str(device))
            if not m:
                raise ValueError(
                    f"Invalid device '{device}'. Expected 'cpu' or 'gpu:<ordinal>'"
                )
            self.type = DeviceType.GPU
            self.index = int(m.group(1))

    @classmethod
    def cpu(cls) -> "Device":
        """Return the host device."""
        return cls("cpu")

    @classmethod
    def gpu(cls, ordinal: int = 0) -> "Device":
        """Return the accelerator with the given ordinal."""
        if int(ordinal) < 0:
            raise ValueError(f"GPU ordinal must be >= 0, got {ordinal}")
        return cls(f"gpu:{int(ordinal)}")

    def __str__(self) -> str:
        return "cpu" if self.type is DeviceType.CPU else f"gpu:{self.index}"

    def __repr__(self) -> str:
        return f"Device('{self}')"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Device):
            return NotImplemented
        return (self.type, self.index) == (other.type, other.index)

    def __hash__(self) -> int:
        return hash((self.type, self.index))

    def is_cpu(self) -> bool:
        """
        Check whether this device represents host memory.

        Returns
        -------
        bool
            True if the device type is CPU, False otherwise.
        """
        return self.type is DeviceType.CPU

    def is_gpu(self) -> bool:
        """
        Check whether this device represents an accelerator.

        Returns
        -------
        bool
            True if the device type is GPU, False otherwise.
        """
        return self.type is DeviceType.GPU


def as_device(device: "Device | str | None") -> Device:
    """
    Normalize a device-like argument (Device, string, or None for CPU).
    """
    if device is None:
        return Device.cpu()
    if isinstance(device, Device):
        return device
    return Device(str(device))
