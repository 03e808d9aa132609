"""Serial transport for EiBotBoard controllers.

This module handles:
- Opening the USB CDC serial port (explicit, auto-detected or reused)
- Forwarding raw byte runs from a reader thread into the line framer
- Writing command text
- Remembering the last opened port for draw-time reconnects

The hint for the last opened port only lives in memory; nothing is
persisted across process restarts.
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

import serial
from serial.tools import list_ports

from ..errors import TransportConnectError, TransportWriteError
from ..models import TransportKind
from .base import ALREADY_CONNECTED, Transport
from .port_finder import (
    PortHint,
    PortInfo,
    find_port_info,
    find_ports,
    find_single_port,
    is_matching_port,
    select_reconnect_port,
)

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 9600
MIN_BAUDRATE = 300
READ_TIMEOUT = 0.1  # seconds
READ_CHUNK_SIZE = 4096  # bytes


class SerialTransport(Transport):
    """EBB transport over a byte-stream serial port.

    Example:
        >>> transport = SerialTransport()
        >>> transport.connect()  # auto-detects the single EBB port
        'EBBv13_and_above EB Firmware Version 2.8.1'
        >>> transport.send_command("EM,1,1")
        'OK'
        >>> transport.disconnect()
        >>> transport.reconnect_if_previously_connected()
        'EBBv13_and_above EB Firmware Version 2.8.1'
    """

    kind = TransportKind.SERIAL
    label = "Serial"

    def __init__(self,
                 port: Optional[str] = None,
                 baudrate: int = DEFAULT_BAUDRATE,
                 timeout: float = READ_TIMEOUT,
                 chunk_size: int = READ_CHUNK_SIZE,
                 **kwargs):
        """Initialize serial transport.

        Args:
            port: Serial port path (e.g., '/dev/ttyACM0'), or None to auto-detect
            baudrate: Serial baud rate (default 9600)
            timeout: Read timeout in seconds
            chunk_size: Maximum bytes to read per chunk (default 4KB)
            **kwargs: Passed to Transport (default_timeout_ms, timer_factory)
        """
        super().__init__(**kwargs)
        self._port = port
        self._baudrate = self.normalize_baudrate(baudrate)
        self._timeout = timeout
        self._chunk_size = chunk_size

        self._serial: Optional[serial.Serial] = None
        self._active = False
        self._reader_thread: Optional[threading.Thread] = None

        self._port_hint: Optional[PortHint] = None

    @classmethod
    def is_supported(cls) -> bool:
        """True when the OS lets pyserial enumerate serial ports."""
        try:
            list_ports.comports()
        except Exception as e:
            logger.debug(f"Serial port enumeration unavailable: {e}")
            return False
        return True

    @staticmethod
    def normalize_baudrate(value) -> int:
        """Bound baud rates below at 300; invalid values fall back to 9600."""
        try:
            parsed = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return DEFAULT_BAUDRATE
        return max(MIN_BAUDRATE, parsed)

    @property
    def port(self) -> Optional[str]:
        """Port of the current (or last) connection."""
        return self._port

    @property
    def baudrate(self) -> int:
        return self._baudrate

    @property
    def port_hint(self) -> Optional[PortHint]:
        return self._port_hint

    def is_current_port(self, device: Optional[str]) -> bool:
        """True if ``device`` is the port of the open connection."""
        return bool(device) and self.is_connected() and device == self._port

    def connect_for_draw(self, **options) -> str:
        """Connect for a draw run, reusing a known port when it is unambiguous."""
        self.assert_support()
        if self.is_connected():
            return ALREADY_CONNECTED

        if not options.get("port"):
            candidate = self._select_reconnect_port()
            if candidate is not None:
                logger.info(f"Reusing serial port {candidate.port}")
                return self.connect(**dict(options, port=candidate.port))
        return self.connect(**options)

    def reconnect_if_previously_connected(self, **options) -> Optional[str]:
        """Reopen the last used port when exactly one safe candidate exists.

        Returns:
            Version line on reconnect, None when nothing was attempted
        """
        if self.is_connected() or self._port_hint is None:
            return None

        candidate = self._select_reconnect_port()
        if candidate is None:
            return None

        logger.info(f"Reconnecting to serial port {candidate.port}")
        return self.connect(**dict(options, port=candidate.port))

    # Transport hooks

    def _open(self, port: Optional[str] = None, baudrate=None, **_ignored) -> None:
        device = port or self._port
        if device is None:
            info = find_single_port()
            device = info.port
            logger.info(f"Auto-detected EBB on {device}")

        baud = self.normalize_baudrate(self._baudrate if baudrate is None else baudrate)

        try:
            self._serial = serial.Serial(
                port=device,
                baudrate=baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self._timeout,
                xonxoff=False,
                rtscts=False,
            )

            # Clear buffers
            self._serial.reset_input_buffer()
            self._serial.reset_output_buffer()
        except serial.SerialException as e:
            logger.error(f"Failed to open {device}: {e}")
            raise TransportConnectError(f"Failed to open {device}: {e}") from e

        self._port = device
        self._baudrate = baud
        logger.info(f"Connected to {device} @ {baud} baud")

        self._remember_port(device)

        self._active = True
        self._start_reader_thread()

    def _close(self) -> None:
        self._active = False

        thread = self._reader_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._reader_thread = None

        if self._serial:
            try:
                self._serial.close()
            except Exception as e:
                logger.debug(f"Error closing serial port: {e}")
            finally:
                self._serial = None

    def _is_link_open(self) -> bool:
        return self._serial is not None and bool(self._serial.is_open)

    def _write(self, text: str) -> None:
        link = self._serial
        if link is None:
            raise TransportWriteError("Serial writer is not available.")
        try:
            link.write(text.encode("utf-8"))
            link.flush()
        except serial.SerialException as e:
            logger.error(f"Send error: {e}")
            raise TransportWriteError(f"Serial write failed: {e}") from e

    # Internal methods

    def _remember_port(self, device: str) -> None:
        try:
            info = find_port_info(device)
        except Exception as e:
            logger.debug(f"Could not read port info for {device}: {e}")
            return
        if info is None:
            return
        hint = PortHint.from_info(info)
        if hint is not None:
            self._port_hint = hint

    def _select_reconnect_port(self) -> Optional[PortInfo]:
        hint = self._port_hint

        def is_candidate(info: PortInfo) -> bool:
            return is_matching_port(info) or (hint is not None and hint.matches(info))

        try:
            candidates = find_ports(matcher=is_candidate)
        except Exception as e:
            logger.debug(f"Serial port enumeration failed: {e}")
            return None
        return select_reconnect_port(candidates, hint)

    def _start_reader_thread(self) -> None:
        """Start background thread for reading from the port."""
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            daemon=True,
            name="EggBotSerialReader"
        )
        self._reader_thread.start()

    def _reader_loop(self) -> None:
        """Read raw bytes from the port and feed the framer."""
        logger.debug("Reader thread started")

        while self._active and self._serial:
            try:
                link = self._serial
                if link is None:
                    break
                # Block for the first byte, then take whatever else is buffered
                chunk = link.read(min(self._chunk_size, link.in_waiting or 1))

                if chunk:
                    self._feed(chunk)

            except (serial.SerialException, OSError) as e:
                if self._active:
                    logger.error(f"Serial read error: {e}")
                    self._handle_link_lost(e)
                break
            except Exception as e:
                if self._active:
                    logger.error(f"Reader error: {e}")

        logger.debug("Reader thread exiting")
