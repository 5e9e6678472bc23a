"""Unit tests for iot_serial._history."""

import json
import time

from iot_serial import _history
from iot_serial import DeviceHistory, PortDescriptor


def test_save_then_load(tmp_path):
    history = DeviceHistory(tmp_path)
    port = PortDescriptor(
        path="/dev/ttyUSB0", manufacturer="Silicon Labs", serial_number="0001"
    )
    history.save(port)

    record = history.load()
    assert record is not None
    assert record.path == "/dev/ttyUSB0"
    assert record.manufacturer == "Silicon Labs"
    assert record.serial_number == "0001"
    assert abs(record.timestamp / 1000 - time.time()) < 60


def test_stored_json_shape(tmp_path):
    DeviceHistory(tmp_path).save(PortDescriptor(path="COM3"))
    stored = json.loads((tmp_path / "iot-ide-last-device.json").read_text())
    assert set(stored) == {"path", "manufacturer", "serialNumber", "timestamp"}
    assert stored["path"] == "COM3"
    assert isinstance(stored["timestamp"], int)


def test_reads_record_written_by_older_tools(tmp_path):
    record = {
        "path": "/dev/ttyACM0",
        "serialNumber": "abc",
        "timestamp": int(time.time() * 1000) - 1000,
    }
    (tmp_path / "iot-ide-last-device.json").write_text(json.dumps(record))
    loaded = DeviceHistory(tmp_path).load()
    assert loaded is not None
    assert loaded.serial_number == "abc"
    assert loaded.manufacturer is None


def test_stale_record_ignored(tmp_path):
    eight_days_ago = time.time() - 8 * 24 * 60 * 60
    record = {"path": "/dev/ttyUSB0", "timestamp": int(eight_days_ago * 1000)}
    (tmp_path / "iot-ide-last-device.json").write_text(json.dumps(record))
    assert DeviceHistory(tmp_path).load() is None


def test_missing_or_malformed_record(tmp_path):
    history = DeviceHistory(tmp_path)
    assert history.load() is None

    history.path.parent.mkdir(parents=True, exist_ok=True)
    history.path.write_text("{not json")
    assert history.load() is None

    history.path.write_text(json.dumps({"timestamp": "yesterday"}))
    assert history.load() is None


def test_forget(tmp_path):
    history = DeviceHistory(tmp_path)
    history.save(PortDescriptor(path="/dev/ttyUSB0"))
    history.forget()
    assert history.load() is None
    history.forget()  # nothing left to remove


def test_default_state_dir_from_environment(state_dir):
    assert DeviceHistory().path == state_dir / f"{_history.STORAGE_KEY}.json"


def test_save_failure_is_not_raised(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file where a directory should be")
    DeviceHistory(blocker).save(PortDescriptor(path="/dev/ttyUSB0"))
