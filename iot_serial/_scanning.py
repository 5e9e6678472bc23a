import json
import logging
import os
import pathlib
from collections.abc import Iterable

import msgspec
import natsort
from serial.tools import list_ports as pyserial_ports
from serial.tools import list_ports_common

from iot_serial import _exceptions

log = logging.getLogger("iot_serial.scanning")

KNOWN_VENDOR_TOKENS = (
    "esp",
    "arduino",
    "ftdi",
    "silicon labs",
    "wch",
    "adafruit",
    "raspberry pi",
)

KNOWN_USB_VIDS = frozenset(
    (
        0x10C4,  # Silicon Labs CP210x
        0x1A86,  # WCH CH340
        0x0403,  # FTDI
        0x239A,  # Adafruit
        0x303A,  # Espressif native USB
        0x2E8A,  # Raspberry Pi RP2040/RP2350
    )
)


class PortDescriptor(msgspec.Struct, frozen=True, kw_only=True):
    """What we know about a potentially available serial port"""

    path: str
    manufacturer: str | None = None
    serial_number: str | None = None
    vid: int | None = None
    pid: int | None = None
    description: str | None = None
    attr: dict[str, str] = {}

    def __str__(self) -> str:
        return self.path


def list_ports() -> list[PortDescriptor]:
    """Returns the serial ports currently visible on this system"""

    if ov := os.getenv("IOT_SERIAL_SCAN_OVERRIDE"):
        try:
            ov_data = json.loads(pathlib.Path(ov).read_text())
            if not isinstance(ov_data, dict) or not all(
                isinstance(attr, dict)
                and all(isinstance(v, str) for v in attr.values())
                for attr in ov_data.values()
            ):
                raise ValueError("Override data is not a dict of dicts")
        except (OSError, ValueError) as ex:
            msg = f"Can't read $IOT_SERIAL_SCAN_OVERRIDE {ov}"
            raise _exceptions.SerialScanException(msg) from ex

        out = [descriptor_from_attr(p, a) for p, a in ov_data.items()]
        log.debug("$IOT_SERIAL_SCAN_OVERRIDE (%s): %d ports", ov, len(out))
    else:
        try:
            found = pyserial_ports.comports()
        except OSError as ex:
            raise _exceptions.SerialScanException("Can't scan ports") from ex
        out = [_convert_port(p) for p in found]

    out.sort(key=natsort.natsort_keygen(key=lambda p: p.path, alg=natsort.ns.P))
    log.debug("Found %d ports", len(out))
    return out


def descriptor_from_attr(path: str, attr: dict[str, str]) -> PortDescriptor:
    """Builds a PortDescriptor from lower-cased pyserial-style attributes"""

    return PortDescriptor(
        path=path,
        manufacturer=attr.get("manufacturer"),
        serial_number=attr.get("serial_number"),
        vid=_parse_int(attr.get("vid")),
        pid=_parse_int(attr.get("pid")),
        description=attr.get("description"),
        attr=dict(attr),
    )


def is_known_device(port: PortDescriptor) -> bool:
    """True for ports that look like a microcontroller board's USB bridge"""

    maker = (port.manufacturer or "").lower()
    if any(token in maker for token in KNOWN_VENDOR_TOKENS):
        return True
    return port.vid in KNOWN_USB_VIDS


def rank_for_auto_connect(
    ports: Iterable[PortDescriptor],
) -> list[PortDescriptor]:
    """Known board vendors first; otherwise keeps the given order"""

    return sorted(ports, key=lambda p: not is_known_device(p))


def _convert_port(p: list_ports_common.ListPortInfo) -> PortDescriptor:
    _NA = (None, "", "n/a")
    attr = {k.lower(): str(v) for k, v in vars(p).items() if v not in _NA}
    return descriptor_from_attr(p.device, attr)


def _parse_int(text: str | None) -> int | None:
    if not text:
        return None
    try:
        return int(text, 0)
    except ValueError:
        return None
