import asyncio
import contextlib
import errno
import logging
import threading

import serial

from iot_serial import _exceptions
from iot_serial import _locking
from iot_serial import _scanning
from iot_serial import _transport

log = logging.getLogger("iot_serial.transport.host")
data_log = logging.getLogger("iot_serial.transport.data")


class HostTransport(_transport.Transport):
    """OS serial device through pyserial, serviced by I/O threads"""

    kind = "host"

    def __init__(
        self, opts: _transport.SerialOptions = _transport.SerialOptions()
    ):
        super().__init__(opts)
        self._io: _IoThreads | None = None
        self._cleanup: contextlib.ExitStack | None = None

    @classmethod
    def list_ports(cls) -> list[_scanning.PortDescriptor]:
        return _scanning.list_ports()

    @property
    def is_open(self) -> bool:
        return self._cleanup is not None

    async def open(self, port: str, baud: int) -> None:
        if self.is_open:
            raise _exceptions.SerialOpenException("Already open", self.port)

        loop = asyncio.get_running_loop()
        with contextlib.ExitStack() as cleanup:
            sharing = self.opts.sharing
            cleanup.enter_context(_locking.holding_lock_file(port, sharing))

            log.debug("Opening %s at %d baud", port, baud)
            try:
                pyserial = cleanup.enter_context(
                    serial.Serial(
                        port=port,
                        baudrate=baud,
                        bytesize=serial.EIGHTBITS,
                        parity=serial.PARITY_NONE,
                        stopbits=serial.STOPBITS_ONE,
                        xonxoff=False,
                        rtscts=False,
                        dsrdtr=False,
                        write_timeout=self.opts.write_timeout,
                    )
                )
            except OSError as ex:
                if ex.errno == errno.EBUSY:
                    message = "Port busy (EBUSY)"
                    raise _exceptions.SerialOpenBusy(message, port) from ex
                message = "Port open error"
                raise _exceptions.SerialOpenException(message, port) from ex
            except ValueError as ex:
                message = "Port parameters rejected"
                raise _exceptions.SerialOpenException(message, port) from ex

            if hasattr(pyserial, "fileno"):
                fd = pyserial.fileno()
                fd_lock = _locking.holding_fd_lock(port, fd, sharing)
                cleanup.enter_context(fd_lock)

            self._io = cleanup.enter_context(_IoThreads(pyserial, loop, self))
            self._io.start()
            self.port, self._failed = port, False
            self._cleanup = cleanup.pop_all()

    async def close(self) -> None:
        self._teardown()

    async def write(self, data: bytes) -> None:
        if not self._io or self._failed:
            raise _exceptions.SerialIoClosed("Port is not open", self.port)
        await self._io.write(data)

    def _teardown(self) -> None:
        cleanup, self._cleanup, self._io = self._cleanup, None, None
        if cleanup:
            log.debug("Closing %s", self.port)
            cleanup.close()

    def _fail(self, message: str) -> bool:
        reported = super()._fail(message)
        if reported:
            self._teardown()
        return reported


class _IoThreads(contextlib.AbstractContextManager):
    def __init__(
        self,
        pyserial: serial.Serial,
        loop: asyncio.AbstractEventLoop,
        owner: HostTransport,
    ) -> None:
        self.threads: list[threading.Thread] = []
        self.pyserial = pyserial
        self.loop = loop
        self.owner = owner
        self.monitor = threading.Condition()
        self.outgoing = bytearray()
        self.queued = 0  # total bytes ever queued
        self.written = 0  # total bytes ever written
        self.exception: None | _exceptions.SerialIoException = None
        self.waiters: list[tuple[int, asyncio.Future[None]]] = []

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.stop()

    def start(self) -> None:
        loops = ((self._readloop, "reader"), (self._writeloop, "writer"))
        for target, role in loops:
            name = f"{self.pyserial.port} {role}"
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self.threads.append(thread)

    def stop(self) -> None:
        with self.monitor:
            if not self.exception:
                message, port = "Port was closed", self.pyserial.port
                self.exception = _exceptions.SerialIoClosed(message, port)
            self.monitor.notify_all()

        try:
            self.pyserial.cancel_read()
            self.pyserial.cancel_write()
        except OSError:
            port = self.pyserial.port
            log.warning("Can't cancel %s I/O", port, exc_info=True)

        current = threading.current_thread()
        for thread in self.threads:
            if thread is not current:
                thread.join()
        self._resolve_waiters()

    async def write(self, data: bytes) -> None:
        with self.monitor:
            if self.exception:
                raise self.exception
            if not data:
                return
            self.outgoing.extend(data)
            self.queued += len(data)
            future = self.loop.create_future()
            self.waiters.append((self.queued, future))
            self.monitor.notify_all()
        await future

    def _readloop(self) -> None:
        log.debug("Starting thread")
        while not self.exception:
            incoming, error = b"", None
            try:
                # Block for at least one byte, then grab all available
                incoming = self.pyserial.read(size=1)
                if incoming and (waiting := self.pyserial.in_waiting) > 0:
                    incoming += self.pyserial.read(size=waiting)
            except OSError as ex:
                message, port = "Serial read error", self.pyserial.port
                error = _exceptions.SerialIoException(message, port)
                error.__cause__ = ex

            with self.monitor:
                if self.exception:
                    break
                if incoming:
                    deliver = self.owner._deliver
                    self.loop.call_soon_threadsafe(deliver, incoming)
                if error:
                    self._fail_locked(error)

    def _writeloop(self) -> None:
        log.debug("Starting thread")

        # Avoid blocking on writes to avoid pyserial bugs:
        # https://github.com/pyserial/pyserial/issues/280
        # https://github.com/pyserial/pyserial/issues/281
        chunk = b""
        while True:
            error = None
            if chunk:
                try:
                    self.pyserial.write(chunk)
                    self.pyserial.flush()
                except OSError as ex:
                    message, port = "Serial write error", self.pyserial.port
                    error = _exceptions.SerialIoException(message, port)
                    error.__cause__ = ex

            with self.monitor:
                if self.exception:
                    break
                if error:
                    self._fail_locked(error)
                    break
                if chunk:
                    del self.outgoing[: len(chunk)]
                    self.written += len(chunk)
                    left = len(self.outgoing)
                    data_log.debug("Wrote %db, %db left", len(chunk), left)
                    self.loop.call_soon_threadsafe(self._resolve_waiters)
                while not self.exception and not self.outgoing:
                    self.monitor.wait()
                if self.exception:
                    break
                chunk = bytes(self.outgoing[:256])

    def _fail_locked(self, error: _exceptions.SerialIoException) -> None:
        """Must be run with self.monitor lock held."""

        self.exception = error
        self.monitor.notify_all()
        cause = error.__cause__
        message = f"{error} ({cause})" if cause else str(error)
        self.loop.call_soon_threadsafe(self._resolve_waiters)
        self.loop.call_soon_threadsafe(self.owner._fail, message)

    def _resolve_waiters(self) -> None:
        """Must be run from the event loop (or after the threads are gone)."""

        with self.monitor:
            keep = []
            for target, future in self.waiters:
                if future.done():
                    continue
                if self.written >= target:
                    future.set_result(None)
                elif self.exception:
                    future.set_exception(self.exception)
                else:
                    keep.append((target, future))
            self.waiters = keep
