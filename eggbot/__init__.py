"""EggBot link layer - serial, BLE and Wi-Fi transports for the EBB protocol."""

from .controller import TransportController
from .errors import (
    EggBotError,
    UnsupportedTransportError,
    TransportConnectError,
    ConnectionStageError,
    PortNotFoundError,
    MultiplePortsError,
    NotConnectedError,
    TransportWriteError,
    CommandTimeoutError,
    UnknownCommandError,
    DisconnectedError,
)
from .models import CommandMode, ConnectionState, TransportKind, WriteMode
from .transport import BleTransport, SerialTransport, Transport, WifiTransport

__all__ = [
    "TransportController",
    "Transport",
    "SerialTransport",
    "BleTransport",
    "WifiTransport",
    "CommandMode",
    "ConnectionState",
    "TransportKind",
    "WriteMode",
    "EggBotError",
    "UnsupportedTransportError",
    "TransportConnectError",
    "ConnectionStageError",
    "PortNotFoundError",
    "MultiplePortsError",
    "NotConnectedError",
    "TransportWriteError",
    "CommandTimeoutError",
    "UnknownCommandError",
    "DisconnectedError",
]
