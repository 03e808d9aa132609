"""Transport selection facade.

TransportController owns one adapter per link kind and routes every call to
the one that is currently selected. Callers construct it; there is no shared
module-level instance.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from .models import TransportKind
from .transport import BleTransport, SerialTransport, Transport, WifiTransport

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]


class TransportController:
    """High-level interface to the EggBot over serial, BLE or Wi-Fi.

    This class acts as a facade, managing:
    1. The three transport adapters
    2. Which adapter is active
    3. Controller-level line listeners that follow the active adapter

    Example:
        >>> controller = TransportController()
        >>> controller.switch_transport_kind("wifi")
        True
        >>> controller.connect(host="eggbot.local")
        'EBBv13_and_above EB Firmware Version 2.8.1'
        >>> controller.send_command_expect_ok("QB")
        ['0']
        >>> controller.disconnect_all()
    """

    def __init__(self,
                 serial: Optional[SerialTransport] = None,
                 ble: Optional[BleTransport] = None,
                 wifi: Optional[WifiTransport] = None,
                 kind=TransportKind.SERIAL):
        """Initialize the controller.

        Args:
            serial: Serial adapter, created when not given
            ble: BLE adapter, created when not given
            wifi: Wi-Fi adapter, created when not given
            kind: Initially selected link kind (unknown values mean serial)
        """
        self._adapters: Dict[TransportKind, Transport] = {
            TransportKind.SERIAL: serial if serial is not None else SerialTransport(),
            TransportKind.BLE: ble if ble is not None else BleTransport(),
            TransportKind.WIFI: wifi if wifi is not None else WifiTransport(),
        }
        self._kind = TransportKind.normalize(kind)
        self._lock = threading.RLock()

        self._line_listeners: List[LineCallback] = []
        self._listener_lock = threading.Lock()
        self._adapter_unsubscribers = [
            adapter.on_line(self._make_forwarder(adapter))
            for adapter in self._adapters.values()
        ]

    # --- Selection ---

    @property
    def transport_kind(self) -> TransportKind:
        with self._lock:
            return self._kind

    @property
    def active_transport(self) -> Transport:
        with self._lock:
            return self._adapters[self._kind]

    def transport(self, kind) -> Transport:
        """Adapter for ``kind``, whether or not it is active."""
        return self._adapters[TransportKind.normalize(kind)]

    def set_transport_kind(self, kind) -> TransportKind:
        """Select the active kind without touching any connection."""
        with self._lock:
            self._kind = TransportKind.normalize(kind)
            return self._kind

    def switch_transport_kind(self, kind) -> bool:
        """Activate another kind, disconnecting the current adapter first.

        Returns:
            False when ``kind`` is already active, True otherwise
        """
        target = TransportKind.normalize(kind)
        with self._lock:
            if target is self._kind:
                return False
            current = self._adapters[self._kind]

        if current.is_connected():
            logger.info(f"Disconnecting {current.label} before switching to {target.value}")
            current.disconnect()

        with self._lock:
            self._kind = target
        logger.info(f"Active transport: {target.value}")
        return True

    def is_transport_supported(self, kind=None) -> bool:
        """Probe a kind (the active one by default) without side effects."""
        adapter = self.active_transport if kind is None else self.transport(kind)
        return adapter.is_supported()

    # --- Lifecycle ---

    def connect(self, **options) -> str:
        return self.active_transport.connect(**options)

    def connect_for_draw(self, **options) -> str:
        return self.active_transport.connect_for_draw(**options)

    def reconnect_if_previously_connected(self, **options) -> Optional[str]:
        """Silently reopen the last serial port; None for other kinds."""
        if self.transport_kind is not TransportKind.SERIAL:
            return None
        return self.active_transport.reconnect_if_previously_connected(**options)

    def disconnect(self) -> None:
        self.active_transport.disconnect()

    def disconnect_all(self) -> None:
        """Tear down every adapter, whichever is active."""
        for kind, adapter in self._adapters.items():
            try:
                adapter.disconnect()
            except Exception as e:
                logger.warning(f"Failed to disconnect {kind.value} transport: {e}")

    def stop(self) -> None:
        for adapter in self._adapters.values():
            adapter.stop()

    @property
    def stop_requested(self) -> bool:
        return self.active_transport.stop_requested

    def is_connected(self) -> bool:
        return self.active_transport.is_connected()

    @property
    def connection_kind_label(self) -> str:
        return self.active_transport.connection_kind_label

    def is_current_port(self, device: Optional[str]) -> bool:
        """True if ``device`` is the open serial port; False for other kinds."""
        if self.transport_kind is not TransportKind.SERIAL:
            return False
        return self.active_transport.is_current_port(device)

    # --- Commands ---

    def send_command(self, command: str, timeout_ms: Optional[int] = None) -> str:
        return self.active_transport.send_command(command, timeout_ms=timeout_ms)

    def send_command_expect_ok(self, command: str, timeout_ms: Optional[int] = None) -> List[str]:
        return self.active_transport.send_command_expect_ok(command, timeout_ms=timeout_ms)

    def query_version(self, **kwargs) -> str:
        return self.active_transport.query_version(**kwargs)

    def send_raw(self, text: str) -> None:
        self.active_transport.send_raw(text)

    # --- Line listeners ---

    def on_line(self, callback: LineCallback) -> Callable[[], None]:
        """Subscribe to lines received by whichever adapter is active.

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

    def close(self) -> None:
        """Disconnect everything and detach from the adapters."""
        self.disconnect_all()
        for unsubscribe in self._adapter_unsubscribers:
            unsubscribe()
        self._adapter_unsubscribers = []

    # --- Context manager ---

    def __enter__(self) -> TransportController:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # --- Internal methods ---

    def _make_forwarder(self, adapter: Transport) -> LineCallback:
        def forward(line: str) -> None:
            if self.active_transport is not adapter:
                return
            with self._listener_lock:
                listeners = list(self._line_listeners)
            for listener in listeners:
                try:
                    listener(line)
                except Exception as e:
                    logger.error(f"Error in line listener: {e}")

        return forward
