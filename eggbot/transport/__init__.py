"""Transport adapters speaking the EBB line protocol."""

from .base import Transport
from .serial import SerialTransport
from .wifi import WifiTransport
from .ble import BleTransport

__all__ = ["Transport", "SerialTransport", "WifiTransport", "BleTransport"]
