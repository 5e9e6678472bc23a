"""Persistent record of the last device we connected to successfully."""

import logging
import os
import pathlib
import time

import msgspec

from iot_serial import _scanning

STORAGE_KEY = "iot-ide-last-device"
MAX_AGE = 7 * 24 * 60 * 60  # seconds

log = logging.getLogger("iot_serial.history")


class LastDevice(msgspec.Struct, frozen=True, rename="camel"):
    path: str
    manufacturer: str | None = None
    serial_number: str | None = None
    timestamp: int = 0  # epoch milliseconds

    @property
    def age(self) -> float:
        return time.time() - self.timestamp / 1000


def default_state_dir() -> pathlib.Path:
    if env_dir := os.getenv("IOT_SERIAL_STATE_DIR"):
        return pathlib.Path(env_dir)
    return pathlib.Path.home() / ".iot-serial"


class DeviceHistory:
    """Reads and writes the last-known-device record as a small JSON file"""

    def __init__(self, state_dir: pathlib.Path | str | None = None):
        base = pathlib.Path(state_dir) if state_dir else default_state_dir()
        self.path = base / f"{STORAGE_KEY}.json"

    def __repr__(self) -> str:
        return f"DeviceHistory({str(self.path.parent)!r})"

    def load(self) -> LastDevice | None:
        try:
            data = self.path.read_bytes()
            record = msgspec.json.decode(data, type=LastDevice)
        except FileNotFoundError:
            return None
        except (OSError, msgspec.DecodeError):
            log.warning("Can't load %s", self.path, exc_info=True)
            return None

        if record.age > MAX_AGE:
            days = record.age / 86400
            log.debug("Ignoring stale %s (%.1f days)", record.path, days)
            return None
        return record

    def save(self, port: _scanning.PortDescriptor) -> None:
        record = LastDevice(
            path=port.path,
            manufacturer=port.manufacturer,
            serial_number=port.serial_number,
            timestamp=int(time.time() * 1000),
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_bytes(msgspec.json.encode(record))
            log.debug("Saved %s to %s", port.path, self.path)
        except OSError:
            log.warning("Can't save %s", self.path, exc_info=True)

    def forget(self) -> None:
        try:
            self.path.unlink()
            log.debug("Removed %s", self.path)
        except FileNotFoundError:
            pass
        except OSError:
            log.warning("Can't remove %s", self.path, exc_info=True)
