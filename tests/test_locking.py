"""Unit tests for iot_serial._locking."""

import os
from pathlib import Path

import pytest

from iot_serial import _exceptions
from iot_serial import _locking


def test_lock_path_for_regular_device():
    expected = Path("/var/lock/LCK..ttyUSB0")
    assert _locking.lock_path_for("/dev/ttyUSB0") == expected


def test_lock_path_for_pty_device():
    assert _locking.lock_path_for("/dev/pts/5") == Path("/var/lock/LCK..pts.5")


def test_lock_file_created_and_released(fs):
    fs.create_dir("/var/lock")
    with _locking.holding_lock_file("/dev/ttyUSB0", "exclusive") as path:
        assert path.read_text().strip() == str(os.getpid())
    assert not Path("/var/lock/LCK..ttyUSB0").exists()


def test_oblivious_skips_lock_file(fs):
    fs.create_dir("/var/lock")
    with _locking.holding_lock_file("/dev/ttyUSB0", "oblivious"):
        assert not Path("/var/lock/LCK..ttyUSB0").exists()


def test_missing_lock_dir_is_not_an_error(fs):
    with _locking.holding_lock_file("/dev/ttyUSB0", "exclusive"):
        assert not Path("/var/lock").exists()


def test_live_owner_makes_port_busy(fs, mocker):
    fs.create_dir("/var/lock")
    Path("/var/lock/LCK..ttyUSB0").write_text(f"{'4242':>10}\n")
    mocker.patch("os.kill")  # pid 4242 "exists"

    with pytest.raises(_exceptions.SerialOpenBusy):
        with _locking.holding_lock_file("/dev/ttyUSB0", "exclusive"):
            pass
    assert Path("/var/lock/LCK..ttyUSB0").exists()


def test_reentrant_for_same_process(fs):
    fs.create_dir("/var/lock")
    Path("/var/lock/LCK..ttyUSB0").write_text(f"{os.getpid():>10d}\n")
    with _locking.holding_lock_file("/dev/ttyUSB0", "exclusive"):
        pass


def test_lock_owner_returns_none_for_missing_file(fs):
    fs.create_dir("/var/lock")
    assert _locking.lock_owner(Path("/var/lock/LCK..test")) is None


def test_lock_owner_removes_stale_lock(fs):
    fs.create_dir("/var/lock")
    lock_path = Path("/var/lock/LCK..test")
    lock_path.write_text("999999999\n")  # no such process

    assert _locking.lock_owner(lock_path) is None
    assert not lock_path.exists()


def test_lock_owner_removes_invalid_content(fs):
    fs.create_dir("/var/lock")
    lock_path = Path("/var/lock/LCK..test")
    lock_path.write_text("not a number\n")

    assert _locking.lock_owner(lock_path) is None
    assert not lock_path.exists()


def test_lock_owner_reports_other_users_process(fs, mocker):
    fs.create_dir("/var/lock")
    lock_path = Path("/var/lock/LCK..test")
    lock_path.write_text("1\n")
    mocker.patch("os.kill", side_effect=PermissionError)

    assert _locking.lock_owner(lock_path) == 1
    assert lock_path.exists()


def test_stale_lock_is_taken_over(fs):
    fs.create_dir("/var/lock")
    lock_path = Path("/var/lock/LCK..ttyACM0")
    lock_path.write_text("999999999\n")  # owner long gone

    with _locking.holding_lock_file("/dev/ttyACM0", "polite") as path:
        assert path == lock_path
        assert int(path.read_text()) == os.getpid()
    assert not lock_path.exists()


def test_lock_file_not_ours_is_left_alone(fs):
    fs.create_dir("/var/lock")
    lock_path = Path("/var/lock/LCK..ttyUSB0")
    lock_path.write_text(f"{os.getpid():>10d}\n")  # taken by an earlier open

    with _locking.holding_lock_file("/dev/ttyUSB0", "exclusive"):
        pass
    assert lock_path.exists()


def test_lock_path_for_bare_name():
    assert _locking.lock_path_for("COM3") == Path("/var/lock/LCK..COM3")
