"""Abstract base class for the EggBot transport adapters.

The Transport base owns everything the three links have in common:
- Connection state machine (DISCONNECTED -> CONNECTING -> CONNECTED)
- LineFramer + CommandQueue pair fed by the adapter's receive path
- Fan-out of framed lines to line listeners
- Reject sweep whenever the link goes away
- Firmware version probe after a successful open

Subclasses only implement opening, closing and raw I/O for their link.

Key principles:
- Every command settles exactly once (see CommandQueue)
- Listener and classifier see lines in the same order
- Teardown is idempotent and best-effort
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from typing import Callable, List, Optional

from ..errors import (
    DisconnectedError,
    EggBotError,
    NotConnectedError,
    TransportWriteError,
    UnsupportedTransportError,
)
from ..models import CommandMode, ConnectionState, TransportKind
from ..protocol import CommandQueue, DEFAULT_COMMAND_TIMEOUT_MS, LineFramer

logger = logging.getLogger(__name__)

VERSION_COMMAND = "v"
VERSION_PROBE_TIMEOUT_MS = 1500
ALREADY_CONNECTED = "Already connected"
NO_VERSION_RESPONSE = "Connected (no version response)"

LineCallback = Callable[[str], None]


class Transport(ABC):
    """Abstract EggBot transport speaking the EBB line protocol.

    Example:
        >>> transport = SerialTransport()
        >>> transport.connect(port="/dev/ttyACM0")
        'EBBv13_and_above EB Firmware Version 2.8.1'
        >>> transport.send_command("SC,4,12000")
        'OK'
        >>> transport.send_command_expect_ok("QB")
        ['0']
        >>> transport.disconnect()
    """

    kind: TransportKind = TransportKind.SERIAL
    label: str = "Transport"

    def __init__(self,
                 default_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        """Initialize shared transport state.

        Args:
            default_timeout_ms: Timeout for commands that do not give one
            timer_factory: threading.Timer compatible factory for timeouts
        """
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.RLock()

        self._framer = LineFramer()
        self._queue = CommandQueue(
            writer=self._write_command,
            default_timeout_ms=default_timeout_ms,
            timer_factory=timer_factory,
        )

        self._line_listeners: List[LineCallback] = []
        self._listener_lock = threading.Lock()

        # Advisory flag for draw loops, see stop()
        self._stop_requested = threading.Event()

    # --- Capability ---

    @classmethod
    @abstractmethod
    def is_supported(cls) -> bool:
        """Probe whether this transport can work here, without side effects."""
        pass

    def assert_support(self) -> None:
        """Raise UnsupportedTransportError when the capability is missing."""
        if not self.is_supported():
            raise UnsupportedTransportError(f"{self.label} is not supported on this system.")

    # --- Lifecycle ---

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def connection_kind_label(self) -> str:
        """User-facing name of the link."""
        return self.label

    def is_connected(self) -> bool:
        """Check if the link is open and usable for commands."""
        return self.state is ConnectionState.CONNECTED and self._is_link_open()

    def connect(self, **options) -> str:
        """Open the link and probe the firmware version.

        Returns:
            Version line reported by the firmware, "Already connected", or a
            placeholder when the device did not answer the probe

        Raises:
            UnsupportedTransportError: The transport cannot work here
            TransportConnectError: The link could not be opened
        """
        self.assert_support()
        if self.is_connected():
            return ALREADY_CONNECTED

        self._stop_requested.clear()
        self._set_state(ConnectionState.CONNECTING)
        try:
            self._open(**options)
        except BaseException:
            self._release_quietly()
            self._reset(DisconnectedError(f"{self.label} connection failed."))
            raise

        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"{self.label} link open")
        return self._probe_version()

    def connect_for_draw(self, **options) -> str:
        """Open the link for a draw run."""
        return self.connect(**options)

    def reconnect_if_previously_connected(self, **options) -> Optional[str]:
        """Reopen a previously used link without user interaction.

        Only transports that can do this safely override it.
        """
        return None

    def disconnect(self) -> None:
        """Close the link, rejecting every pending command.

        Safe to call multiple times.
        """
        self._stop_requested.set()
        was_connected = self.state is not ConnectionState.DISCONNECTED
        # Flip state first so reader threads treat their errors as shutdown
        self._set_state(ConnectionState.DISCONNECTED)
        self._release_quietly()
        self._reset(DisconnectedError(f"{self.label} connection closed."))
        if was_connected:
            logger.info(f"{self.label} disconnected")

    def stop(self) -> None:
        """Request the current draw run to end.

        Advisory only: queued commands are left untouched. Disconnect to
        abort pending work.
        """
        self._stop_requested.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    # --- Commands ---

    def submit_command(self,
                       command: str,
                       mode: CommandMode = CommandMode.LINE,
                       timeout_ms: Optional[int] = None) -> Future:
        """Queue a command without waiting for its response.

        Raises:
            NotConnectedError: The transport is not connected
        """
        if not self.is_connected():
            raise NotConnectedError("EggBot is not connected.")
        return self._queue.submit(command, mode, timeout_ms)

    def send_command(self, command: str, timeout_ms: Optional[int] = None) -> str:
        """Send a command and return its first response line."""
        return self.submit_command(command, CommandMode.LINE, timeout_ms).result()

    def send_command_expect_ok(self, command: str, timeout_ms: Optional[int] = None) -> List[str]:
        """Send a command and return the lines received before "OK".

        Raises:
            UnknownCommandError: The firmware rejected the command
            CommandTimeoutError: No "OK" within the timeout
        """
        return self.submit_command(command, CommandMode.EXPECT_OK, timeout_ms).result()

    def query_version(self, timeout_ms: int = VERSION_PROBE_TIMEOUT_MS) -> str:
        """Ask the firmware for its version line."""
        return self.send_command(VERSION_COMMAND, timeout_ms=timeout_ms)

    def send_raw(self, text: str) -> None:
        """Write text to the link as-is, bypassing the command queue."""
        if not self._is_link_open():
            raise NotConnectedError("EggBot is not connected.")
        try:
            pending_write = self._write(text)
            if isinstance(pending_write, Future):
                pending_write.result()
        except TransportWriteError:
            raise
        except Exception as e:
            raise TransportWriteError(f"Write failed: {e}") from e

    # --- Line listeners ---

    def on_line(self, callback: LineCallback) -> Callable[[], None]:
        """Subscribe to every framed response line.

        Listeners run on the transport's receive thread and must not block
        on commands sent through the same transport.

        Returns:
            Unsubscribe function
        """
        with self._listener_lock:
            if callback not in self._line_listeners:
                self._line_listeners.append(callback)

        def unsubscribe():
            self.off_line(callback)

        return unsubscribe

    def off_line(self, callback: LineCallback) -> None:
        with self._listener_lock:
            if callback in self._line_listeners:
                self._line_listeners.remove(callback)

    # --- Context manager ---

    def __enter__(self) -> Transport:
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()

    # --- Adapter hooks ---

    @abstractmethod
    def _open(self, **options) -> None:
        """Open the physical link. Raise on failure."""
        pass

    @abstractmethod
    def _close(self) -> None:
        """Release link resources. Must tolerate a partially opened link."""
        pass

    @abstractmethod
    def _is_link_open(self) -> bool:
        pass

    @abstractmethod
    def _write(self, text: str) -> Optional[Future]:
        """Write raw text; may return a Future for asynchronous writes."""
        pass

    # --- Receive path ---

    def _feed(self, data) -> None:
        """Frame incoming text or bytes and route the resulting lines."""
        if isinstance(data, str):
            lines = self._framer.consume(data)
        else:
            lines = self._framer.consume_bytes(data)

        for line in lines:
            self._trace(f"Received line {line!r}")
            self._publish_line(line)
            self._queue.handle_line(line)

    def _handle_link_lost(self, reason) -> None:
        """React to an unsolicited disconnect reported by the link."""
        with self._state_lock:
            if self._state is not ConnectionState.CONNECTED:
                return
            self._state = ConnectionState.DISCONNECTED

        logger.warning(f"{self.label} connection lost: {reason}")
        self._stop_requested.set()
        self._release_quietly()
        self._reset(DisconnectedError(f"{self.label} connection lost."))

    # --- Internal methods ---

    def _write_command(self, text: str) -> Optional[Future]:
        if not self._is_link_open():
            raise NotConnectedError("EggBot is not connected.")
        self._trace(f"Writing {text!r}")
        return self._write(text)

    def _probe_version(self) -> str:
        try:
            version = self.query_version(timeout_ms=VERSION_PROBE_TIMEOUT_MS)
        except EggBotError as e:
            logger.info(f"{self.label} version probe failed: {e}")
            return NO_VERSION_RESPONSE
        logger.info(f"{self.label} firmware: {version}")
        return version or "Connected"

    def _publish_line(self, line: str) -> None:
        with self._listener_lock:
            listeners = list(self._line_listeners)

        for listener in listeners:
            try:
                listener(line)
            except Exception as e:
                logger.error(f"Error in line listener: {e}")

    def _release_quietly(self) -> None:
        try:
            self._close()
        except Exception as e:
            logger.debug(f"Ignoring {self.label} cleanup error: {e}")

    def _reset(self, error: EggBotError) -> None:
        """Return to DISCONNECTED and flush every owned command."""
        self._set_state(ConnectionState.DISCONNECTED)
        self._framer.reset()
        self._queue.reject_all(error)

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            self._state = state

    def _trace(self, message: str) -> None:
        logger.debug(f"[{self.label}] {message}")
