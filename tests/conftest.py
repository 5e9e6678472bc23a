import asyncio
import contextlib
import io
import json
import os
import pty
import typing

import ok_logging_setup
import pytest
from pyfakefs.fake_filesystem_unittest import Patcher

from iot_serial import _exceptions
from iot_serial import _locking
from iot_serial import _scanning
from iot_serial import _transport

ok_logging_setup.install(
    {
        "OK_LOGGING_LEVEL": "iot_serial=DEBUG,WARNING",
        "OK_LOGGING_OUTPUT": "stdout",
    }
)


class PseudoTtySerial(typing.NamedTuple):
    path: str
    control: io.FileIO
    simulated: io.FileIO


@pytest.fixture
def pty_serial():
    with contextlib.ExitStack() as cleanup:
        ctrl_fd, sim_fd = pty.openpty()
        path = os.ttyname(sim_fd)
        ctrl = cleanup.enter_context(os.fdopen(ctrl_fd, "r+b", buffering=0))
        sim = cleanup.enter_context(os.fdopen(sim_fd, "r+b", buffering=0))
        yield PseudoTtySerial(path=path, control=ctrl, simulated=sim)


@pytest.fixture
def fs():
    """pyfakefs 'fs', reloading _locking so its module-level LOCK_DIR is
    built with the fake pathlib"""
    patcher = Patcher(modules_to_reload=[_locking])
    patcher.setUp()
    yield patcher.fs
    patcher.tearDown()


@pytest.fixture
def set_scan_override(monkeypatch, tmp_path):
    path = tmp_path / "scan.json"
    path.write_text("{}")
    monkeypatch.setenv("IOT_SERIAL_SCAN_OVERRIDE", str(path))

    def set_ports(ports: dict[str, dict[str, str]]):
        path.write_text(json.dumps(ports))

    return set_ports


@pytest.fixture(autouse=True)
def state_dir(monkeypatch, tmp_path):
    path = tmp_path / "state"
    monkeypatch.setenv("IOT_SERIAL_STATE_DIR", str(path))
    return path


#
# Simulated board
#


Fragments = typing.Literal["pieces", "whole", "bytes"]


class FakeBoard:
    """A pretend MicroPython REPL: echoes each line, prints any canned
    output for it, then prompts. Lines ending in ':' open a block that a
    blank line closes.

    'fragments' sets how replies reach the host: "pieces" (echo, output and
    prompt as separate reads), "whole" (one read per write) or "bytes"
    (one read per byte)."""

    def __init__(self) -> None:
        self.ports: list[_scanning.PortDescriptor] = []
        self.unopenable: set[str] = set()
        self.replies: dict[str, str] = {}
        self.hang_on: set[str] = set()
        self.silent = False
        self.fragments: Fragments = "pieces"
        self.opened: list[str] = []
        self.open_count = 0
        self.max_open = 0
        self.written: list[bytes] = []
        self.lines: list[str] = []
        self.interrupts = 0
        self.transport: "FakeTransport | None" = None
        self._partial = b""
        self._block: list[str] = []

    def receive(self, data: bytes) -> list[str]:
        chunks: list[str] = []
        self.written.append(data)
        if data == b"\x03":
            self.interrupts += 1
            return [] if self.silent else ["\r\n>>> "]

        self._partial += data
        while b"\n" in self._partial:
            raw, self._partial = self._partial.split(b"\n", 1)
            line = raw.decode()
            self.lines.append(line)
            if self.silent or line in self.hang_on:
                continue
            chunks.append(f"{line}\r\n")
            chunks.extend(self._run(line))
        return chunks

    def fragment(self, chunks: list[str]) -> list[bytes]:
        pieces = [chunk.encode() for chunk in chunks]
        joined = b"".join(pieces)
        if self.fragments == "whole":
            return [joined] if joined else []
        if self.fragments == "bytes":
            return [joined[i : i + 1] for i in range(len(joined))]
        return pieces

    def _run(self, line: str) -> list[str]:
        if self._block:
            if line.strip():
                self._block.append(line)
                return ["... "]
            block, self._block = self._block, []
            output = [self.replies[b] for b in block if b in self.replies]
            return [f"{o}\r\n" for o in output] + [">>> "]
        if line.rstrip().endswith(":"):
            self._block = [line]
            return ["... "]
        if line in self.replies:
            return [f"{self.replies[line]}\r\n", ">>> "]
        return [">>> "]


class FakeTransport(_transport.Transport):
    kind = "fake"
    board: typing.ClassVar[FakeBoard]

    def __init__(
        self, opts: _transport.SerialOptions = _transport.SerialOptions()
    ):
        super().__init__(opts)
        self._open = False

    @classmethod
    def list_ports(cls) -> list[_scanning.PortDescriptor]:
        return list(cls.board.ports)

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, port: str, baud: int) -> None:
        self.board.opened.append(port)
        if port in self.board.unopenable:
            raise _exceptions.SerialOpenException("No such device", port)
        self._open, self.port, self._failed = True, port, False
        self.board.open_count += 1
        self.board.max_open = max(self.board.max_open, self.board.open_count)
        self.board.transport = self

    async def close(self) -> None:
        if self._open:
            self._open = False
            self.board.open_count -= 1

    async def write(self, data: bytes) -> None:
        if not self._open:
            raise _exceptions.SerialIoClosed("Port is not open", self.port)
        loop = asyncio.get_running_loop()
        for piece in self.board.fragment(self.board.receive(data)):
            loop.call_soon(self._deliver, piece)

    def unplug(self) -> None:
        if self._fail("Device removed"):
            self._open = False
            self.board.open_count -= 1


@pytest.fixture
def board():
    board = FakeBoard()
    board.ports = [_scanning.PortDescriptor(path="/dev/ttyFAKE0")]
    return board


@pytest.fixture
def fake_backend(board):
    return type("BoardTransport", (FakeTransport,), {"board": board})
