from ._device import Device, DeviceType, as_device
from ._device_protocol import DeviceLike

__all__ = [
    Device.__name__,
    DeviceType.__name__,
    DeviceLike.__name__,
    as_device.__name__,
]
