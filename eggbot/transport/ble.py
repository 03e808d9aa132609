"""Bluetooth LE transport for the EggDuino BLE UART profile.

bleak is asyncio based, so the transport hosts a private event loop in a
daemon thread and bridges to it with run_coroutine_threadsafe:

- connect() blocks on each connection stage in turn
- writes are scheduled on the loop and return a Future
- notifications and GATT disconnects arrive on the loop thread

Reconnection is never automatic; every connect is caller initiated.
"""
from __future__ import annotations

import asyncio
import logging
import sys
import threading
from concurrent.futures import Future
from typing import Iterable, Optional

from bleak import BleakClient, BleakScanner

from ..errors import ConnectionStageError, TransportWriteError
from ..models import ConnectionState, TransportKind, WriteMode
from .base import Transport

logger = logging.getLogger(__name__)

BLE_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
BLE_RX_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
BLE_TX_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"

DEFAULT_SCAN_TIMEOUT = 10.0  # seconds
DEFAULT_CONNECT_TIMEOUT = 10.0  # seconds
SHUTDOWN_TIMEOUT = 5.0  # seconds

# Platforms with a bleak backend
SUPPORTED_PLATFORMS = ("linux", "darwin", "win32")


def resolve_write_mode(properties: Iterable[str]) -> WriteMode:
    """Pick the best write primitive the RX characteristic offers."""
    props = {str(p).lower() for p in properties or ()}
    if "write-without-response" in props:
        return WriteMode.WITHOUT_RESPONSE
    if "write" in props:
        return WriteMode.WITH_RESPONSE
    return WriteMode.DEFAULT


_WRITE_RESPONSE_FLAG = {
    WriteMode.WITHOUT_RESPONSE: False,
    WriteMode.WITH_RESPONSE: True,
    WriteMode.DEFAULT: None,
}


class EventLoopThread:
    """An asyncio event loop running forever in a daemon thread."""

    def __init__(self, name: str = "EggBotBleLoop"):
        self._name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(
                target=self._thread_main,
                args=(self._loop,),
                daemon=True,
                name=self._name,
            )
            self._thread.start()

    def in_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def submit(self, coro) -> Future:
        """Schedule a coroutine on the loop from any thread."""
        if self._loop is None or not self.is_running:
            coro.close()
            raise RuntimeError("BLE event loop is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro, timeout: Optional[float] = None):
        """Run a coroutine on the loop and wait for its result."""
        return self.submit(coro).result(timeout)

    def stop(self) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is None or thread is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not threading.current_thread():
            thread.join(timeout=SHUTDOWN_TIMEOUT)

    @staticmethod
    def _thread_main(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()


class BleTransport(Transport):
    """EBB transport over the BLE UART service.

    Connect options:
        address: Connect to this device address instead of scanning
        name: Only accept devices whose name contains this text
        scan_timeout: Seconds to scan for a device
        debug_scan: Accept devices that do not advertise the UART service
        debug_log: Log every connection step and line (implied by debug_scan)

    Example:
        >>> transport = BleTransport()
        >>> transport.connect(name="EggDuino")
        'EBBv13_and_above EB Firmware Version 2.8.1'
        >>> transport.write_mode
        <WriteMode.WITHOUT_RESPONSE: 'write-without-response'>
    """

    kind = TransportKind.BLE
    label = "Bluetooth LE"

    def __init__(self,
                 address: Optional[str] = None,
                 name: Optional[str] = None,
                 scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 **kwargs):
        super().__init__(**kwargs)
        self._address = address
        self._name = name
        self._scan_timeout = scan_timeout
        self._connect_timeout = connect_timeout

        self._loop_thread = EventLoopThread()

        self._device = None
        self._client: Optional[BleakClient] = None
        self._rx_char = None
        self._tx_char = None
        self._write_mode: Optional[WriteMode] = None
        self._debug_logging = False
        self._pending_shutdown: Optional[Future] = None

    @classmethod
    def is_supported(cls) -> bool:
        return sys.platform.startswith(SUPPORTED_PLATFORMS)

    @property
    def write_mode(self) -> Optional[WriteMode]:
        """Write primitive resolved at connect time."""
        return self._write_mode

    @property
    def device(self):
        return self._device

    def connect(self, **options) -> str:
        """Open the BLE link; the private loop is stopped again on failure."""
        try:
            return super().connect(**options)
        except BaseException:
            self._loop_thread.stop()
            raise

    def disconnect(self) -> None:
        """Close the BLE link and stop the private event loop."""
        self._trace("Disconnect requested.")
        super().disconnect()

        shutdown, self._pending_shutdown = self._pending_shutdown, None
        if shutdown is not None and not shutdown.done():
            # Called on the loop thread; let the GATT teardown finish first
            shutdown.add_done_callback(lambda _done: self._stop_loop_if_idle())
        else:
            self._loop_thread.stop()

    # Transport hooks

    def _open(self,
              address: Optional[str] = None,
              name: Optional[str] = None,
              scan_timeout: Optional[float] = None,
              debug_scan: bool = False,
              debug_log: bool = False,
              **_ignored) -> None:
        debug_scan = bool(debug_scan)
        self._debug_logging = bool(debug_log) or debug_scan
        address = address or self._address
        name = name or self._name
        scan_timeout = self._scan_timeout if scan_timeout is None else scan_timeout

        self._loop_thread.start()

        stage = "request"
        try:
            self._trace(f"Requesting BLE device (debug_scan={debug_scan}, service={BLE_SERVICE_UUID}).")
            device = self._loop_thread.run(
                self._request_device(address, name, scan_timeout, debug_scan)
            )
            if device is None:
                raise LookupError("No BLE device selected.")
            self._device = device
            self._trace(f"BLE device selected: {self._describe_device(device)}")

            stage = "gatt"
            client = BleakClient(
                device,
                disconnected_callback=self._on_gatt_disconnected,
                timeout=self._connect_timeout,
            )
            self._client = client
            self._loop_thread.run(client.connect())
            self._trace("Connected to BLE GATT server.")

            stage = "service"
            service = client.services.get_service(BLE_SERVICE_UUID)
            if service is None:
                raise LookupError(f"Service {BLE_SERVICE_UUID} not found.")
            self._trace("Resolved BLE primary service.")

            stage = "chars"
            rx_char = service.get_characteristic(BLE_RX_UUID)
            tx_char = service.get_characteristic(BLE_TX_UUID)
            if rx_char is None or tx_char is None:
                raise LookupError("UART characteristics not found.")
            self._rx_char = rx_char
            self._tx_char = tx_char
            self._write_mode = resolve_write_mode(rx_char.properties)
            self._trace(f"Resolved BLE characteristics (write mode {self._write_mode.value}).")

            stage = "notify"
            self._loop_thread.run(client.start_notify(tx_char, self._on_notification))
            self._trace("BLE notifications started.")
        except Exception as e:
            reason = str(e) or type(e).__name__ or "Unknown BLE error"
            self._trace(f"BLE connection failed at stage {stage}: {reason}")
            raise ConnectionStageError("BLE", stage, reason) from e

    def _close(self) -> None:
        client, tx_char = self._client, self._tx_char
        # Cleared first so our own disconnect is not reported as a lost link
        self._device = None
        self._client = None
        self._rx_char = None
        self._tx_char = None
        self._write_mode = None
        self._debug_logging = False

        if client is None or not self._loop_thread.is_running:
            return

        shutdown = self._shutdown_client(client, tx_char)
        if self._loop_thread.in_loop_thread():
            self._pending_shutdown = self._loop_thread.submit(shutdown)
            return
        try:
            self._loop_thread.run(shutdown, timeout=SHUTDOWN_TIMEOUT)
        except Exception as e:
            logger.debug(f"Ignoring BLE shutdown error: {e}")

    def _is_link_open(self) -> bool:
        client = self._client
        return (
            client is not None
            and bool(client.is_connected)
            and self._rx_char is not None
            and self._tx_char is not None
        )

    def _write(self, text: str) -> Future:
        client, rx_char = self._client, self._rx_char
        if client is None or rx_char is None:
            raise TransportWriteError("BLE write characteristic is not available.")

        payload = text.encode("utf-8")
        response = _WRITE_RESPONSE_FLAG[self._write_mode or WriteMode.DEFAULT]
        self._trace(f"Writing BLE payload ({len(payload)} bytes): {text!r}")
        return self._loop_thread.submit(
            client.write_gatt_char(rx_char, payload, response=response)
        )

    def _trace(self, message: str) -> None:
        if self._debug_logging:
            logger.debug(f"[{self.label}] {message}")

    # Loop-thread callbacks

    def _on_notification(self, _characteristic, data: bytearray) -> None:
        if data:
            self._feed(bytes(data))

    def _on_gatt_disconnected(self, client: BleakClient) -> None:
        if client is not self._client:
            return
        self._trace("BLE GATT disconnected by peer.")
        self._handle_link_lost("GATT server disconnected")

    # Internal methods

    def _stop_loop_if_idle(self) -> None:
        # A connect may have started while the teardown was finishing
        if self.state is ConnectionState.DISCONNECTED and self._client is None:
            self._loop_thread.stop()

    @staticmethod
    async def _request_device(address: Optional[str],
                              name: Optional[str],
                              scan_timeout: float,
                              debug_scan: bool):
        if address:
            return await BleakScanner.find_device_by_address(address, timeout=scan_timeout)

        hint = (name or "").strip().lower()

        def matches(device, adv_data) -> bool:
            if hint:
                names = (device.name or "", adv_data.local_name or "")
                if not any(hint in n.lower() for n in names):
                    return False
            if debug_scan:
                return True
            return BLE_SERVICE_UUID in [u.lower() for u in adv_data.service_uuids]

        return await BleakScanner.find_device_by_filter(matches, timeout=scan_timeout)

    @staticmethod
    async def _shutdown_client(client: BleakClient, tx_char) -> None:
        if tx_char is not None:
            try:
                await client.stop_notify(tx_char)
            except Exception as e:
                logger.debug(f"Ignoring stop_notify race: {e}")
        if client.is_connected:
            try:
                await client.disconnect()
            except Exception as e:
                logger.debug(f"Ignoring BLE disconnect race: {e}")

    @staticmethod
    def _describe_device(device) -> str:
        return f"{getattr(device, 'name', None) or 'Unnamed'} ({getattr(device, 'address', '')})"
