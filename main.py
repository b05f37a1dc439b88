import asyncio
import logging

from alerts import AlertDispatcher, LoggingAlertSink, RecordingAlertSink
from ble_device import PairingInput
from ble_transport import BleakTransport
from log_sink import setup_logging
from registry import ConnectionRegistry, UnknownBeaconError
from transport import TransportError

logger = logging.getLogger(__name__)


def print_status(registry):
    beacons = registry.snapshot()
    if not beacons:
        print("  No beacons yet")
        return
    for b in beacons:
        battery = f"{b.battery_level}%" if b.battery_level is not None else "?"
        print(f"  #{b.index} {b.label or b.name:<16} {b.connection_state:<28} "
              f"{b.range_state:<13} bracelet {b.worn_state:<4} battery {battery:<5} "
              f"{b.distance_text}")


async def main():
    """Main application entry point."""
    setup_logging()
    alert_sink = RecordingAlertSink(forward=LoggingAlertSink())
    registry = ConnectionRegistry(BleakTransport(), AlertDispatcher(alert_sink))
    registry.start()

    print("\nCommands:")
    print("  - 'pair <tag payload>' to scan for a bracelet (e.g. pair N<identify uuid>)")
    print("  - 'status' to view tracked bracelets")
    print("  - 'alerts' to view outstanding alerts")
    print("  - 'label <name> <label>' to name a bracelet")
    print("  - 'alarm <name> on|off' to start/stop the emergency alarm")
    print("  - 'disconnect' to disconnect all bracelets")
    print("  - 'quit' to exit")
    print()

    while True:
        try:
            line = await asyncio.to_thread(input, "Enter command: ")
        except (EOFError, KeyboardInterrupt):
            print("\nExiting...")
            break

        parts = line.strip().split()
        if not parts:
            continue
        command, args = parts[0].lower(), parts[1:]

        try:
            if command == 'quit':
                break

            elif command == 'pair' and len(args) == 1:
                pairing = PairingInput.from_tag(args[0])
                await registry.scan(pairing)
                print(f"Scanning for {pairing.identifier}"
                      + (" (reconnect)" if pairing.is_reconnect else ""))

            elif command == 'status':
                print_status(registry)

            elif command == 'alerts':
                for alert in alert_sink.outstanding():
                    print(f"  [{alert.target}] {alert.title}")

            elif command == 'label' and len(args) >= 2:
                registry.set_label(args[0], " ".join(args[1:]))

            elif command == 'alarm' and len(args) == 2 and args[1] in ('on', 'off'):
                registry.send_command(args[0], "emergency_start" if args[1] == 'on' else "emergency_stop")

            elif command == 'disconnect':
                await registry.disconnect_all()

            else:
                print("Unknown command")

        except UnknownBeaconError as e:
            print(f"No bracelet named {e}")
        except (ValueError, TransportError) as e:
            print(f"Error: {e}")

    await registry.close()


if __name__ == "__main__":
    asyncio.run(main())
