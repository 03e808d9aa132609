"""Tests for BleTransport with bleak mocked out.

Coroutines still run on the transport's private event loop thread, so the
threading bridge is exercised for real.
"""
import time
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from eggbot.errors import ConnectionStageError, DisconnectedError, TransportWriteError
from eggbot.models import ConnectionState, WriteMode
from eggbot.transport import BleTransport
from eggbot.transport.ble import (
    BLE_RX_UUID,
    BLE_SERVICE_UUID,
    BLE_TX_UUID,
    EventLoopThread,
    resolve_write_mode,
)

VERSION_LINE = "EBBv13_and_above EB Firmware Version 2.8.1"


class FakeGattDevice:
    """Wires a mocked BleakClient to a canned UART peripheral."""

    def __init__(self, rx_properties=("write-without-response", "write")):
        self.replies = {b"v\r": VERSION_LINE.encode() + b"\r\n"}
        self.notify_callback = None
        self.writes = []

        self.device = MagicMock()
        self.device.name = "EggDuino"
        self.device.address = "AA:BB:CC:DD:EE:FF"

        self.rx = MagicMock()
        self.rx.uuid = BLE_RX_UUID
        self.rx.properties = list(rx_properties)
        self.tx = MagicMock()
        self.tx.uuid = BLE_TX_UUID

        self.service = MagicMock()
        self.service.get_characteristic.side_effect = {BLE_RX_UUID: self.rx, BLE_TX_UUID: self.tx}.get

        self.client = MagicMock()
        self.client.is_connected = True
        self.client.services.get_service.side_effect = {BLE_SERVICE_UUID: self.service}.get
        self.client.connect = AsyncMock()
        self.client.start_notify = AsyncMock(side_effect=self._start_notify)
        self.client.stop_notify = AsyncMock()
        self.client.disconnect = AsyncMock(side_effect=self._disconnect)
        self.client.write_gatt_char = AsyncMock(side_effect=self._write)

    def notify(self, data: bytes):
        self.notify_callback(self.tx, bytearray(data))

    def _start_notify(self, char, callback):
        self.notify_callback = callback

    def _disconnect(self):
        self.client.is_connected = False

    def _write(self, char, data, response=None):
        self.writes.append((bytes(data), response))
        reply = self.replies.get(bytes(data))
        if reply:
            self.notify(reply)


class TestWriteMode(unittest.TestCase):

    def test_prefers_write_without_response(self):
        self.assertEqual(resolve_write_mode(["write", "write-without-response"]), WriteMode.WITHOUT_RESPONSE)

    def test_write_with_response(self):
        self.assertEqual(resolve_write_mode(["read", "write"]), WriteMode.WITH_RESPONSE)

    def test_generic_write(self):
        self.assertEqual(resolve_write_mode(["notify"]), WriteMode.DEFAULT)
        self.assertEqual(resolve_write_mode(None), WriteMode.DEFAULT)


class TestEventLoopThread(unittest.TestCase):

    def test_run_and_stop(self):
        loop_thread = EventLoopThread()
        loop_thread.start()

        async def answer():
            return 42

        self.assertEqual(loop_thread.run(answer(), timeout=2), 42)
        loop_thread.stop()
        self.assertFalse(loop_thread.is_running)

    def test_submit_when_stopped(self):
        async def noop():
            return None

        with self.assertRaises(RuntimeError):
            EventLoopThread().submit(noop())


class BleTestCase(unittest.TestCase):

    def setUp(self):
        self.gatt = FakeGattDevice()

        scanner_patcher = patch('eggbot.transport.ble.BleakScanner')
        self.mock_scanner = scanner_patcher.start()
        self.addCleanup(scanner_patcher.stop)
        self.mock_scanner.find_device_by_filter = AsyncMock(return_value=self.gatt.device)
        self.mock_scanner.find_device_by_address = AsyncMock(return_value=self.gatt.device)

        client_patcher = patch('eggbot.transport.ble.BleakClient', return_value=self.gatt.client)
        self.mock_client_class = client_patcher.start()
        self.addCleanup(client_patcher.stop)

        platform_patcher = patch('eggbot.transport.ble.sys.platform', 'linux')
        platform_patcher.start()
        self.addCleanup(platform_patcher.stop)

        self.transport = BleTransport()

    def tearDown(self):
        self.transport.disconnect()


class TestBleConnect(BleTestCase):
    """Tests for the staged connect."""

    def test_connect(self):
        version = self.transport.connect()

        self.assertEqual(version, VERSION_LINE)
        self.assertTrue(self.transport.is_connected())
        self.assertEqual(self.transport.write_mode, WriteMode.WITHOUT_RESPONSE)
        self.assertEqual(self.gatt.writes, [(b"v\r", False)])
        self.gatt.client.connect.assert_awaited_once()
        self.gatt.client.start_notify.assert_awaited_once()
        self.mock_scanner.find_device_by_filter.assert_awaited_once()

    def test_connect_by_address(self):
        self.transport.connect(address="AA:BB:CC:DD:EE:FF", scan_timeout=3.0)

        self.mock_scanner.find_device_by_address.assert_awaited_once_with("AA:BB:CC:DD:EE:FF", timeout=3.0)
        self.mock_scanner.find_device_by_filter.assert_not_called()

    def test_scan_filter(self):
        self.transport.connect(name="egg")
        matcher = self.mock_scanner.find_device_by_filter.call_args.args[0]

        advertised = MagicMock(local_name="EggDuino", service_uuids=[BLE_SERVICE_UUID.upper()])
        silent = MagicMock(local_name="EggDuino", service_uuids=[])
        other = MagicMock(local_name="Speaker", service_uuids=[BLE_SERVICE_UUID])
        device = MagicMock()
        device.name = None

        self.assertTrue(matcher(device, advertised))
        self.assertFalse(matcher(device, silent))
        self.assertFalse(matcher(device, other))

    def test_debug_scan_accepts_any_device(self):
        self.transport.connect(debug_scan=True)
        matcher = self.mock_scanner.find_device_by_filter.call_args.args[0]

        device = MagicMock()
        device.name = "Anything"
        self.assertTrue(matcher(device, MagicMock(local_name=None, service_uuids=[])))

    def test_write_with_response(self):
        self.gatt.rx.properties = ["write"]
        self.transport.connect()

        self.assertEqual(self.transport.write_mode, WriteMode.WITH_RESPONSE)
        self.assertEqual(self.gatt.writes[0][1], True)

    def test_disconnected_callback_registered(self):
        self.transport.connect()
        kwargs = self.mock_client_class.call_args.kwargs
        self.assertEqual(kwargs["disconnected_callback"], self.transport._on_gatt_disconnected)

    def test_unsupported_platform(self):
        with patch('eggbot.transport.ble.sys.platform', 'emscripten'):
            self.assertFalse(BleTransport.is_supported())


class TestBleStageErrors(BleTestCase):
    """Each connect stage reports its own failure."""

    def assertStageError(self, stage, reason=None):
        with self.assertRaises(ConnectionStageError) as ctx:
            self.transport.connect()
        self.assertEqual(ctx.exception.transport, "BLE")
        self.assertEqual(ctx.exception.stage, stage)
        if reason is not None:
            self.assertEqual(str(ctx.exception), f"BLE {stage} failed: {reason}")
        self.assertEqual(self.transport.state, ConnectionState.DISCONNECTED)
        self.assertFalse(self.transport.is_connected())

    def test_no_device(self):
        self.mock_scanner.find_device_by_filter.return_value = None
        self.assertStageError("request", "No BLE device selected.")

    def test_gatt_failure(self):
        self.gatt.client.connect.side_effect = TimeoutError("Device unreachable")
        self.assertStageError("gatt", "Device unreachable")

    def test_missing_service(self):
        self.gatt.client.services.get_service.side_effect = None
        self.gatt.client.services.get_service.return_value = None
        self.assertStageError("service")

    def test_missing_characteristic(self):
        self.gatt.service.get_characteristic.side_effect = {BLE_RX_UUID: self.gatt.rx}.get
        self.assertStageError("chars")

    def test_notify_failure(self):
        self.gatt.client.start_notify.side_effect = RuntimeError("Notify not permitted")
        self.assertStageError("notify", "Notify not permitted")

    def test_failed_connect_releases_client(self):
        self.gatt.client.start_notify.side_effect = RuntimeError("Notify not permitted")

        with self.assertRaises(ConnectionStageError):
            self.transport.connect()
        self.gatt.client.disconnect.assert_awaited()

    def test_failed_connect_stops_event_loop(self):
        self.gatt.client.connect.side_effect = TimeoutError("Device unreachable")

        with self.assertRaises(ConnectionStageError):
            self.transport.connect()
        self.assertFalse(self.transport._loop_thread.is_running)

    def test_connect_after_failed_connect(self):
        self.mock_scanner.find_device_by_filter.return_value = None
        with self.assertRaises(ConnectionStageError):
            self.transport.connect()

        self.mock_scanner.find_device_by_filter.return_value = self.gatt.device
        self.assertEqual(self.transport.connect(), VERSION_LINE)


class TestBleTraffic(BleTestCase):
    """Tests for commands, notifications and link loss."""

    def setUp(self):
        super().setUp()
        self.transport.connect()

    def test_send_command_expect_ok(self):
        self.gatt.replies[b"QB\r"] = b"0\r\nOK\r\n"
        self.assertEqual(self.transport.send_command_expect_ok("QB"), ["0"])

    def test_notifications_split_mid_line(self):
        future = self.transport.submit_command("QP")
        self.gatt.notify(b"1\r")
        self.gatt.notify(b"\n")

        self.assertEqual(future.result(timeout=2), "1")

    def test_async_write_failure_rejects_command(self):
        self.gatt.client.write_gatt_char.side_effect = RuntimeError("GATT write failed")

        future = self.transport.submit_command("QP")
        error = future.exception(timeout=2)

        self.assertIsInstance(error, TransportWriteError)
        self.assertIsInstance(error.__cause__, RuntimeError)

    def test_peer_disconnect_rejects_pending(self):
        future = self.transport.submit_command("QP")
        callback = self.mock_client_class.call_args.kwargs["disconnected_callback"]

        self.gatt.client.is_connected = False
        callback(self.gatt.client)

        error = future.exception(timeout=2)
        self.assertIsInstance(error, DisconnectedError)
        self.assertEqual(str(error), "Bluetooth LE connection lost.")
        self.assertFalse(self.transport.is_connected())

    def test_stale_client_disconnect_ignored(self):
        callback = self.mock_client_class.call_args.kwargs["disconnected_callback"]

        callback(MagicMock())

        self.assertTrue(self.transport.is_connected())

    def test_disconnect_stops_notifications(self):
        self.transport.disconnect()

        self.gatt.client.stop_notify.assert_awaited_once_with(self.gatt.tx)
        self.gatt.client.disconnect.assert_awaited_once()
        self.assertIsNone(self.transport.write_mode)
        self.assertFalse(self.transport._loop_thread.is_running)

    def test_reconnect_after_disconnect(self):
        self.transport.disconnect()
        self.gatt.client.is_connected = True

        self.assertEqual(self.transport.connect(), VERSION_LINE)

    def test_disconnect_from_line_listener(self):
        """A listener on the loop thread can disconnect; GATT teardown still completes."""
        def on_line(line):
            if line == "BYE":
                self.transport.disconnect()

        self.transport.on_line(on_line)

        async def deliver():
            self.gatt.notify(b"BYE\r\n")

        self.transport._loop_thread.run(deliver(), timeout=2)

        deadline = time.monotonic() + 2
        while self.gatt.client.disconnect.await_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        while self.transport._loop_thread.is_running and time.monotonic() < deadline:
            time.sleep(0.01)

        self.gatt.client.stop_notify.assert_awaited_once_with(self.gatt.tx)
        self.gatt.client.disconnect.assert_awaited_once()
        self.assertFalse(self.transport.is_connected())
        self.assertFalse(self.transport._loop_thread.is_running)


if __name__ == "__main__":
    unittest.main()
