"""WebSocket transport for the EggDuino Wi-Fi bridge.

Commands go out as text frames. Incoming frames may be text or binary;
binary payloads are treated as a UTF-8 byte stream.
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

import websocket

from ..errors import TransportConnectError, TransportWriteError
from ..models import TransportKind
from .base import Transport

logger = logging.getLogger(__name__)

DEFAULT_WIFI_PORT = 1337
DEFAULT_WIFI_PATH = "/"
MIN_PORT = 1
MAX_PORT = 65535
OPEN_TIMEOUT = 5.0  # seconds


def normalize_port(value) -> int:
    """Clamp a port to [1, 65535]; invalid values fall back to 1337."""
    try:
        parsed = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_WIFI_PORT
    return max(MIN_PORT, min(MAX_PORT, parsed))


def normalize_path(value) -> str:
    """Default to "/" and make sure the path starts with a slash."""
    text = str(value or "").strip()
    if not text:
        return DEFAULT_WIFI_PATH
    return text if text.startswith("/") else f"/{text}"


def resolve_socket_url(url: Optional[str] = None,
                       host: Optional[str] = None,
                       port=None,
                       secure: bool = False,
                       path: Optional[str] = None) -> str:
    """Build the WebSocket URL from an explicit URL or its parts.

    Examples:
        >>> resolve_socket_url(host="eggbot.local")
        'ws://eggbot.local:1337/'
        >>> resolve_socket_url(host="10.0.0.7", port=99999, secure=True, path="ebb")
        'wss://10.0.0.7:65535/ebb'

    Raises:
        ValueError: Neither a URL nor a host was given
    """
    explicit_url = str(url or "").strip()
    if explicit_url:
        return explicit_url

    host_text = str(host or "").strip()
    if not host_text:
        raise ValueError("Wi-Fi host is required.")

    scheme = "wss" if secure else "ws"
    return f"{scheme}://{host_text}:{normalize_port(port)}{normalize_path(path)}"


class WifiTransport(Transport):
    """EBB transport over a WebSocket.

    Connection options given to connect() override the ones given to the
    constructor.

    Example:
        >>> transport = WifiTransport(host="eggbot.local")
        >>> transport.connect()
        'EBBv13_and_above EB Firmware Version 2.8.1'
        >>> transport.socket_url
        'ws://eggbot.local:1337/'
    """

    kind = TransportKind.WIFI
    label = "Wi-Fi"

    def __init__(self,
                 url: Optional[str] = None,
                 host: Optional[str] = None,
                 port: int = DEFAULT_WIFI_PORT,
                 secure: bool = False,
                 path: str = DEFAULT_WIFI_PATH,
                 open_timeout: float = OPEN_TIMEOUT,
                 **kwargs):
        super().__init__(**kwargs)
        self._defaults = {"url": url, "host": host, "port": port, "secure": secure, "path": path}
        self._open_timeout = open_timeout

        self._socket: Optional[websocket.WebSocket] = None
        self._socket_url = ""
        self._active = False
        self._reader_thread: Optional[threading.Thread] = None

    @classmethod
    def is_supported(cls) -> bool:
        return callable(getattr(websocket, "create_connection", None))

    @property
    def socket_url(self) -> str:
        """URL of the open socket, empty while disconnected."""
        return self._socket_url

    # Transport hooks

    def _open(self, url=None, host=None, port=None, secure=None, path=None, **_ignored) -> None:
        options = dict(self._defaults)
        for key, value in (("url", url), ("host", host), ("port", port), ("secure", secure), ("path", path)):
            if value is not None:
                options[key] = value
        socket_url = resolve_socket_url(**options)

        logger.info(f"Opening WebSocket {socket_url}")
        try:
            ws = websocket.create_connection(socket_url, timeout=self._open_timeout)
        except (websocket.WebSocketException, OSError) as e:
            logger.error(f"WebSocket open failed: {socket_url}: {e}")
            raise TransportConnectError(f"WebSocket open failed: {socket_url}") from e

        # Reader thread blocks until a frame arrives or the socket is aborted
        ws.settimeout(None)

        self._socket = ws
        self._socket_url = socket_url
        self._active = True
        self._start_reader_thread()

    def _close(self) -> None:
        self._active = False
        ws = self._socket
        self._socket = None
        self._socket_url = ""

        if ws is not None:
            try:
                ws.send_close()
            except Exception as e:
                logger.debug(f"Ignoring close frame error: {e}")
            try:
                # Wakes the reader thread blocked in recv
                ws.abort()
            except Exception as e:
                logger.debug(f"Ignoring socket abort error: {e}")

        thread = self._reader_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._reader_thread = None

        if ws is not None:
            try:
                ws.shutdown()
            except Exception as e:
                logger.debug(f"Ignoring socket shutdown error: {e}")

    def _is_link_open(self) -> bool:
        ws = self._socket
        return ws is not None and bool(ws.connected)

    def _write(self, text: str) -> None:
        ws = self._socket
        if ws is None:
            raise TransportWriteError("WebSocket is not connected.")
        try:
            ws.send(text)
        except (websocket.WebSocketException, OSError) as e:
            logger.error(f"WebSocket write error: {e}")
            raise TransportWriteError(f"WebSocket write failed: {e}") from e

    # Internal methods

    def _start_reader_thread(self) -> None:
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            daemon=True,
            name="EggBotWifiReader"
        )
        self._reader_thread.start()

    def _reader_loop(self) -> None:
        """Receive frames and feed their payloads to the framer."""
        logger.debug("Reader thread started")

        while self._active:
            ws = self._socket
            if ws is None:
                break
            try:
                opcode, data = ws.recv_data()
            except (websocket.WebSocketException, OSError) as e:
                if self._active:
                    self._handle_link_lost(e)
                break

            if opcode == websocket.ABNF.OPCODE_CLOSE:
                if self._active:
                    self._handle_link_lost("closed by remote end")
                break

            try:
                self._handle_frame(opcode, data)
            except Exception as e:
                logger.error(f"Reader error: {e}")

        logger.debug("Reader thread exiting")

    def _handle_frame(self, opcode: int, data) -> None:
        if opcode == websocket.ABNF.OPCODE_TEXT:
            if isinstance(data, (bytes, bytearray, memoryview)):
                data = bytes(data).decode("utf-8", errors="replace")
            self._feed(data)
        elif opcode == websocket.ABNF.OPCODE_BINARY:
            if isinstance(data, str):
                self._feed(data)
            else:
                self._feed(bytes(data))
