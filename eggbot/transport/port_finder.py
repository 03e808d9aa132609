"""Serial port discovery for EiBotBoard (EBB) controllers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from serial.tools import list_ports

from ..errors import MultiplePortsError, PortNotFoundError

logger = logging.getLogger(__name__)

EBB_VID = 0x04D8
EBB_PID = 0xFD92


@dataclass(frozen=True)
class PortInfo:
    """
    Representation of one serial port as seen by pyserial.

    Attributes:
        port: Port name to open with pyserial (e.g. 'COM3', '/dev/ttyACM0').
        vid: USB Vendor ID (integer) or None if unknown.
        pid: USB Product ID (integer) or None if unknown.
        manufacturer: USB manufacturer string, if available.
        product: USB product string, if available.
        serial_number: USB serial string, if available.
        hwid: Raw hardware ID string from pyserial (for debugging).
    """
    port: str
    vid: Optional[int]
    pid: Optional[int]
    manufacturer: Optional[str] = None
    product: Optional[str] = None
    serial_number: Optional[str] = None
    hwid: str = ""


@dataclass(frozen=True)
class PortHint:
    """USB identity of the last port that was opened successfully."""
    port: str
    vid: int
    pid: int

    @classmethod
    def from_info(cls, info: PortInfo) -> Optional[PortHint]:
        """Build a hint, or None when the port has no usable USB identity."""
        if not isinstance(info.vid, int) or not isinstance(info.pid, int):
            return None
        if info.vid <= 0 or info.pid <= 0:
            return None
        return cls(port=info.port, vid=info.vid, pid=info.pid)

    def matches(self, info: PortInfo) -> bool:
        return info.vid == self.vid and info.pid == self.pid


def _port_to_info(port) -> PortInfo:
    """Convert pyserial's ListPortInfo to PortInfo."""
    return PortInfo(
        port=port.device,
        vid=port.vid,
        pid=port.pid,
        manufacturer=port.manufacturer,
        product=port.product,
        serial_number=port.serial_number,
        hwid=port.hwid,
    )


def list_serial_ports() -> List[PortInfo]:
    """Every serial port currently known to the OS."""
    return [_port_to_info(port) for port in list_ports.comports()]


def is_matching_port(
    info: PortInfo,
    *,
    expected_vid: Optional[int] = EBB_VID,
    expected_pid: Optional[int] = EBB_PID,
) -> bool:
    """
    Decide whether a given PortInfo describes an EBB.

    If a criterion is None, it is ignored.
    """
    if expected_vid is not None and info.vid != expected_vid:
        return False

    if expected_pid is not None and info.pid != expected_pid:
        return False

    return True


def find_ports(
    *,
    matcher: Optional[Callable[[PortInfo], bool]] = None,
    expected_vid: Optional[int] = EBB_VID,
    expected_pid: Optional[int] = EBB_PID,
) -> List[PortInfo]:
    """
    Find all matching serial ports on this machine.

    Either pass a custom `matcher(info) -> bool` or rely on the VID/PID
    criteria.
    """
    results: List[PortInfo] = []
    for info in list_serial_ports():
        if matcher is not None:
            if matcher(info):
                results.append(info)
        elif is_matching_port(info, expected_vid=expected_vid, expected_pid=expected_pid):
            results.append(info)
    return results


def find_single_port(
    *,
    matcher: Optional[Callable[[PortInfo], bool]] = None,
    expected_vid: Optional[int] = EBB_VID,
    expected_pid: Optional[int] = EBB_PID,
) -> PortInfo:
    """
    Find exactly one matching serial port.

    Behaviour:
        - 0 matches  -> PortNotFoundError
        - 1 match    -> return it
        - >1 matches -> log error and raise MultiplePortsError
    """
    matches = find_ports(matcher=matcher, expected_vid=expected_vid, expected_pid=expected_pid)

    if not matches:
        raise PortNotFoundError("No EggBot serial port found")

    if len(matches) > 1:
        logger.error(
            "Multiple matching serial ports found; refusing to choose automatically. "
            "Ports: %s",
            matches,
        )
        raise MultiplePortsError(
            f"Multiple EggBot serial ports found ({len(matches)} ports)",
            ports=matches,
        )

    return matches[0]


def find_port_info(device: str) -> Optional[PortInfo]:
    """Look up the PortInfo for an explicit device path, if present."""
    for info in list_serial_ports():
        if info.port == device:
            return info
    return None


def select_reconnect_port(
    candidates: Sequence[PortInfo],
    hint: Optional[PortHint] = None,
) -> Optional[PortInfo]:
    """
    Pick the port to reopen without asking the user.

    Behaviour:
        - hint matches exactly one candidate -> that candidate
        - hint matches several candidates    -> None (ambiguous)
        - otherwise a single candidate       -> that candidate
        - anything else                      -> None
    """
    if not candidates:
        return None

    if hint is not None:
        matched = [info for info in candidates if hint.matches(info)]
        if len(matched) == 1:
            return matched[0]
        if len(matched) > 1:
            logger.info(f"{len(matched)} ports match the last used EggBot; not reconnecting")
            return None

    return candidates[0] if len(candidates) == 1 else None
