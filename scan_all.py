import asyncio
import sys

from bleak import BleakScanner

from ble_device import ManufacturerData
from proximity import estimate_distance, format_distance
from transport import normalize_uuid

ASSUMED_TX_POWER = -12


async def scan_all(identify_uuid=None, timeout=10.0):
    """List advertising bracelets (all devices if no identify uuid is given)."""
    wanted = normalize_uuid(identify_uuid) if identify_uuid else None
    print(f"Scanning for {'bracelets' if wanted else 'ALL BLE devices'} ({timeout:.0f} seconds)...")
    found = await BleakScanner.discover(timeout=timeout, return_adv=True)

    shown = 0
    for device, adv in found.values():
        uuids = {normalize_uuid(u) for u in adv.service_uuids}
        if wanted and wanted not in uuids:
            continue
        shown += 1
        manufacturer = ManufacturerData.from_advertisement(adv.manufacturer_data)
        print(f"Name: {adv.local_name or device.name or 'Unknown'}")
        print(f"Address: {device.address}")
        print(f"RSSI: {adv.rssi} dBm (~{format_distance(estimate_distance([adv.rssi], ASSUMED_TX_POWER))})")
        if manufacturer:
            print(f"Manufacturer: 0x{manufacturer.company_id:04x} {manufacturer.payload.hex()}")
        print("-" * 50)

    print(f"\nFound {shown} device(s)")


if __name__ == "__main__":
    asyncio.run(scan_all(sys.argv[1] if len(sys.argv) > 1 else None))
