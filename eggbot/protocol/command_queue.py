"""Command queue with a single active-command slot.

The queue owns every CommandRequest from submission until settlement:

- Requests are dispatched strictly one at a time in FIFO order
- The active request is settled by a response line, its timeout, a write
  failure or a reject sweep, whichever comes first
- Each future is settled exactly once; futures are completed outside the lock
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future
from typing import Callable, Deque, List, Optional

from ..errors import CommandTimeoutError, TransportWriteError, UnknownCommandError
from ..models import CommandMode, CommandRequest, with_command_terminator
from .classifier import Verdict, classify_line

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_MS = 1200

# A writer either returns when the bytes are out, or returns a Future that
# completes once an asynchronous write finished.
Writer = Callable[[str], Optional[Future]]


class CommandQueue:
    """FIFO of pending commands plus one active slot.

    Example:
        >>> sent = []
        >>> queue = CommandQueue(writer=sent.append)
        >>> future = queue.submit("v")
        >>> sent
        ['v\\r']
        >>> queue.handle_line("EBBv13_and_above EB Firmware Version 2.8.1")
        True
        >>> future.result()
        'EBBv13_and_above EB Firmware Version 2.8.1'
    """

    def __init__(self,
                 writer: Writer,
                 default_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        """Initialize the queue.

        Args:
            writer: Callable that writes raw command text to the transport
            default_timeout_ms: Timeout used when a command gives none
            timer_factory: threading.Timer compatible factory (tests swap it)
        """
        self._writer = writer
        self._default_timeout_ms = default_timeout_ms
        self._timer_factory = timer_factory

        self._pending: Deque[CommandRequest] = deque()
        self._active: Optional[CommandRequest] = None
        self._lock = threading.RLock()
        self._dispatching = False

    @property
    def active(self) -> Optional[CommandRequest]:
        """The dispatched request awaiting its response, if any."""
        with self._lock:
            return self._active

    @property
    def pending_count(self) -> int:
        """Number of requests waiting behind the active one."""
        with self._lock:
            return len(self._pending)

    @property
    def is_idle(self) -> bool:
        with self._lock:
            return self._active is None and not self._pending

    def normalize_timeout(self, timeout_ms) -> int:
        """Coerce a timeout to an integer of at least 1 ms."""
        try:
            value = int(timeout_ms)
        except (TypeError, ValueError):
            value = 0
        if not value:
            value = self._default_timeout_ms
        return max(1, value)

    def submit(self,
               command: str,
               mode: CommandMode = CommandMode.LINE,
               timeout_ms: Optional[int] = None) -> Future:
        """Create a request for ``command`` and enqueue it.

        Returns:
            Future resolving to a line (LINE) or a list of lines (EXPECT_OK)
        """
        request = CommandRequest(
            command_text=with_command_terminator(command),
            mode=mode,
            timeout_ms=self.normalize_timeout(timeout_ms),
        )
        self.enqueue(request)
        return request.future

    def enqueue(self, request: CommandRequest) -> None:
        """Append a request and dispatch it if the queue is idle."""
        # Running futures cannot be cancelled by callers, only settled here.
        if not request.future.set_running_or_notify_cancel():
            return
        with self._lock:
            self._pending.append(request)
        self._dispatch()

    def handle_line(self, line: str) -> bool:
        """Route one framed response line to the active command.

        Returns:
            True if a command consumed the line, False if none was active
        """
        with self._lock:
            request = self._active
            if request is None:
                return False

            result = classify_line(request.mode, request.lines, line)
            if result.verdict is Verdict.ACCUMULATE:
                request.lines.append(line)
                return True

            self._release(request)

        if result.verdict is Verdict.RESOLVE:
            self._complete(request, result=result.value)
        else:
            self._complete(request, error=UnknownCommandError(result.value))
        self._dispatch()
        return True

    def reject_all(self, error: BaseException) -> int:
        """Reject the active and every queued request with ``error``.

        Returns:
            Number of requests rejected
        """
        with self._lock:
            requests: List[CommandRequest] = []
            if self._active is not None:
                requests.append(self._active)
                self._release(self._active)
            requests.extend(self._pending)
            self._pending.clear()

        if requests:
            logger.debug(f"Rejecting {len(requests)} command(s): {error}")
        for request in requests:
            self._complete(request, error=error)
        return len(requests)

    # Internal methods

    def _dispatch(self) -> None:
        """Send queued requests until one is in flight or the queue is empty.

        Only one thread drives this loop at a time. Settlements that happen
        while it runs (a failed write, a response fed from inside the writer)
        leave the next dispatch to the loop instead of recursing.
        """
        with self._lock:
            if self._dispatching:
                return
            self._dispatching = True

        try:
            while True:
                with self._lock:
                    if self._active is not None or not self._pending:
                        self._dispatching = False
                        return
                    request = self._pending.popleft()
                    self._active = request
                    timer = self._timer_factory(
                        request.timeout_ms / 1000.0,
                        self._on_timeout,
                        args=(request,),
                    )
                    timer.daemon = True
                    request.timer = timer
                    timer.start()

                self._write_request(request)
        except BaseException:
            with self._lock:
                self._dispatching = False
            raise

    def _write_request(self, request: CommandRequest) -> None:
        logger.debug(f"Dispatching {request.command_text!r} ({request.mode.value})")
        try:
            pending_write = self._writer(request.command_text)
        except Exception as e:
            self._on_write_failed(request, e)
            return

        if isinstance(pending_write, Future):
            pending_write.add_done_callback(
                lambda done: self._on_write_done(request, done)
            )

    def _on_write_done(self, request: CommandRequest, done: Future) -> None:
        if done.cancelled():
            self._on_write_failed(request, TransportWriteError("Write was cancelled"))
            return
        error = done.exception()
        if error is not None:
            self._on_write_failed(request, error)

    def _on_write_failed(self, request: CommandRequest, error: BaseException) -> None:
        if not isinstance(error, TransportWriteError):
            wrapped = TransportWriteError(f"Write failed: {error}")
            wrapped.__cause__ = error
            error = wrapped
        logger.warning(f"Write of {request.command_text!r} failed: {error}")
        self._settle(request, error=error)

    def _on_timeout(self, request: CommandRequest) -> None:
        error = CommandTimeoutError(request.command_text, request.timeout_ms)
        if self._settle(request, error=error):
            logger.warning(f"No response to {request.command_text!r} within {request.timeout_ms} ms")

    def _settle(self, request: CommandRequest, result=None, error=None) -> bool:
        """Settle ``request`` if it still owns the active slot."""
        with self._lock:
            if self._active is not request:
                return False
            self._release(request)
        self._complete(request, result=result, error=error)
        self._dispatch()
        return True

    def _release(self, request: CommandRequest) -> None:
        """Clear the active slot and cancel the timer. Caller holds the lock."""
        if self._active is request:
            self._active = None
        if request.timer is not None:
            request.timer.cancel()
            request.timer = None

    @staticmethod
    def _complete(request: CommandRequest, result=None, error=None) -> None:
        if request.future.done():
            return
        if error is not None:
            request.future.set_exception(error)
        else:
            request.future.set_result(result)
