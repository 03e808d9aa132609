#!/usr/bin/env python3
"""
Interactive EggBot link test script.

Connects over the chosen transport, prints the firmware version, echoes
every received line and runs a couple of harmless queries.

    python examples/query_version.py serial [/dev/ttyACM0]
    python examples/query_version.py wifi eggbot.local
    python examples/query_version.py ble [name-hint]
"""

import sys
import logging
from pathlib import Path

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from eggbot import EggBotError, TransportController, TransportKind

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)


def connect_options(kind: TransportKind, target):
    if kind is TransportKind.WIFI:
        return {"host": target}
    if kind is TransportKind.BLE:
        return {"name": target, "debug_log": True}
    return {"port": target}


def main():
    kind = TransportKind.normalize(sys.argv[1] if len(sys.argv) > 1 else "serial")
    target = sys.argv[2] if len(sys.argv) > 2 else None

    with TransportController(kind=kind) as controller:
        if not controller.is_transport_supported():
            print(f"{controller.connection_kind_label} is not supported here.")
            return

        controller.on_line(lambda line: print(f"  <- {line}"))

        print(f"Connecting over {controller.connection_kind_label}...")
        try:
            print(f"Firmware: {controller.connect(**connect_options(kind, target))}")
        except EggBotError as e:
            print(f"Failed to connect: {e}")
            return

        try:
            print("\nQuerying button state (QB)...")
            print(f"Lines: {controller.send_command_expect_ok('QB')}")

            print("\nQuerying pen state (QP)...")
            print(f"Lines: {controller.send_command_expect_ok('QP')}")
        except EggBotError as e:
            print(f"Command failed: {e}")
        except KeyboardInterrupt:
            print("\nInterrupted by user.")

        print("\nDisconnecting...")
    print("Done.")


if __name__ == "__main__":
    main()
