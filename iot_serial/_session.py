import asyncio
import codecs
import contextlib
import functools
import logging
import pathlib
import typing

import msgspec
import pydantic

from iot_serial import _backends
from iot_serial import _events
from iot_serial import _exceptions
from iot_serial import _history
from iot_serial import _scanning
from iot_serial import _transport

SessionState = typing.Literal["disconnected", "connecting", "connected"]

log = logging.getLogger("iot_serial.session")


class SessionOptions(pydantic.BaseModel):
    transport: str | None = None
    serial: _transport.SerialOptions = _transport.SerialOptions()
    state_dir: pathlib.Path | None = None


class Connection(msgspec.Struct, frozen=True):
    kind: str
    port: _scanning.PortDescriptor
    baud: int


class SerialSession(contextlib.AbstractAsyncContextManager):
    """Owns the one live connection to a board and relays its events.

    Events: "data" (decoded text chunk), "error" (message) and
    "disconnected" (no arguments). Listeners run on the event loop."""

    def __init__(
        self,
        opts: SessionOptions = SessionOptions(),
        *,
        backend: type[_transport.Transport] | None = None,
        history: _history.DeviceHistory | None = None,
    ):
        self.opts = opts
        self.history = history or _history.DeviceHistory(opts.state_dir)
        self.connection: Connection | None = None
        self.last_error: str | None = None

        self._unsupported: _exceptions.TransportNotSupported | None = None
        self._backend: type[_transport.Transport] | None = backend
        if backend is None:
            try:
                self._backend = _backends.select_transport(opts.transport)
            except _exceptions.TransportNotSupported as exc:
                log.error("No usable serial transport: %s", exc)
                self._unsupported = exc

        self._events = _events.EventTable()
        self._lock = asyncio.Lock()
        self._state: SessionState = "disconnected"
        self._transport: _transport.Transport | None = None
        self._decoder: codecs.IncrementalDecoder | None = None

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.disconnect()

    def __repr__(self) -> str:
        where = f" {self.connection.port.path}" if self.connection else ""
        return f"SerialSession({self._state}{where})"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == "connected"

    @property
    def backend(self) -> type[_transport.Transport] | None:
        return self._backend

    def list_ports(self) -> list[_scanning.PortDescriptor]:
        """Ports visible to the active backend (empty if there is none)"""

        if self._backend is None:
            return []
        return self._backend.list_ports()

    def on(self, event: str, callback: _events.Listener) -> None:
        self._events.on(event, callback)

    def off(self, event: str, callback: _events.Listener) -> None:
        self._events.off(event, callback)

    def listener_count(self, event: str) -> int:
        return self._events.count(event)

    async def connect(
        self,
        port: _scanning.PortDescriptor | str | None = None,
        baud: int | None = None,
    ) -> bool:
        """Opens 'port' (or picks one automatically); False on failure"""

        async with self._lock:
            await self._close_locked()
            if self._unsupported or self._backend is None:
                self.last_error = str(self._unsupported)
                return False

            baud = baud or self.opts.serial.baud
            self._state = "connecting"
            self.last_error = None
            try:
                if port is None:
                    ok = await self._auto_connect_locked(baud)
                else:
                    if isinstance(port, str):
                        port = self._describe(port)
                    ok = await self._open_locked(port, baud)
            finally:
                if self._transport is None:
                    self._state = "disconnected"
            return ok

    async def auto_connect(self, baud: int | None = None) -> bool:
        """Last device first, then the best-ranked visible port"""

        return await self.connect(None, baud)

    async def disconnect(self) -> None:
        async with self._lock:
            await self._close_locked()

    async def send(self, message: str | bytes) -> bool:
        """Writes 'message' as-is; False if not connected or on failure"""

        transport = self._transport
        if self._state != "connected" or transport is None:
            log.debug("Not connected, dropping %d chars", len(message))
            return False

        data = message.encode() if isinstance(message, str) else message
        try:
            await transport.write(data)
        except _exceptions.SerialIoException as exc:
            self.last_error = str(exc)
            log.warning("Send failed (%s)", exc)
            return False
        return True

    async def _auto_connect_locked(self, baud: int) -> bool:
        assert self._backend is not None
        tried = set()
        if last := self.history.load():
            log.info("🔁 Trying last device %s", last.path)
            known = _scanning.PortDescriptor(
                path=last.path,
                manufacturer=last.manufacturer,
                serial_number=last.serial_number,
            )
            if await self._open_locked(known, baud):
                return True
            tried.add(last.path)

        try:
            ports = self._backend.list_ports()
        except _exceptions.SerialScanException as exc:
            self.last_error = str(exc)
            log.warning("Can't list ports (%s)", exc)
            return False

        candidates = [p for p in ports if p.path not in tried]
        for port in _scanning.rank_for_auto_connect(candidates):
            if await self._open_locked(port, baud):
                return True

        if not candidates:
            self.last_error = self.last_error or "No serial devices found"
        log.warning("Auto-connect failed: %s", self.last_error)
        return False

    async def _open_locked(
        self, port: _scanning.PortDescriptor, baud: int
    ) -> bool:
        assert self._backend is not None
        transport = self._backend(self.opts.serial)
        transport.subscribe(
            functools.partial(self._on_data, transport),
            functools.partial(self._on_error, transport),
            functools.partial(self._on_closed, transport),
        )
        try:
            await transport.open(port.path, baud)
        except _exceptions.SerialOpenException as exc:
            self.last_error = str(exc)
            log.warning("Can't open %s (%s)", port.path, exc)
            return False

        self._transport = transport
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.connection = Connection(kind=transport.kind, port=port, baud=baud)
        self._state = "connected"
        self.history.save(port)
        log.info(
            "🔌 Connected to %s (%s, %d baud)",
            port.path,
            transport.kind,
            baud,
        )
        return True

    async def _close_locked(self) -> None:
        transport = self._transport
        if transport is None:
            self._state = "disconnected"
            return

        self._forget_connection()
        try:
            await transport.close()
        except OSError:
            log.warning("Error closing %s", transport.port, exc_info=True)
        log.info("Disconnected from %s", transport.port)
        self._events.emit("disconnected")

    def _forget_connection(self) -> None:
        self._transport = None
        self._decoder = None
        self.connection = None
        self._state = "disconnected"

    def _describe(self, path: str) -> _scanning.PortDescriptor:
        try:
            ports = self.list_ports()
        except _exceptions.SerialScanException as exc:
            log.debug("Can't list ports to describe %s (%s)", path, exc)
            ports = []
        for port in ports:
            if port.path == path:
                return port
        return _scanning.PortDescriptor(path=path)

    def _on_data(self, transport: _transport.Transport, data: bytes) -> None:
        if transport is not self._transport or self._decoder is None:
            return
        if text := self._decoder.decode(data):
            self._events.emit("data", text)

    def _on_error(self, transport: _transport.Transport, message: str) -> None:
        if transport is not self._transport:
            return
        self.last_error = message
        self._events.emit("error", message)

    def _on_closed(self, transport: _transport.Transport) -> None:
        if transport is not self._transport:
            return
        log.warning("Lost connection to %s", transport.port)
        self._forget_connection()
        self._events.emit("disconnected")
