import asyncio
import logging
import os

import serial

from iot_serial import _exceptions
from iot_serial import _scanning
from iot_serial import _transport

log = logging.getLogger("iot_serial.transport.in_process")

POLL_INTERVAL = 0.01


class InProcessTransport(_transport.Transport):
    """URL-addressed port (loop://, socket://, rfc2217://) polled on the
    event loop itself. It can only see the ports it has been granted,
    which are listed in $IOT_SERIAL_URLS."""

    kind = "in_process"

    def __init__(
        self, opts: _transport.SerialOptions = _transport.SerialOptions()
    ):
        super().__init__(opts)
        self._serial: serial.SerialBase | None = None
        self._reader: asyncio.Task | None = None

    @classmethod
    def list_ports(cls) -> list[_scanning.PortDescriptor]:
        urls = os.getenv("IOT_SERIAL_URLS", "").split()
        return [
            _scanning.PortDescriptor(path=url, description="granted port")
            for url in urls
        ]

    @property
    def is_open(self) -> bool:
        return self._serial is not None

    async def open(self, port: str, baud: int) -> None:
        if self.is_open:
            raise _exceptions.SerialOpenException("Already open", self.port)

        log.debug("Opening %s at %d baud", port, baud)
        try:
            self._serial = serial.serial_for_url(
                port,
                baudrate=baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                timeout=0,
                write_timeout=self.opts.write_timeout,
            )
        except (OSError, ValueError) as ex:
            message = "Port open error"
            raise _exceptions.SerialOpenException(message, port) from ex

        self.port, self._failed = port, False
        self._reader = asyncio.create_task(
            self._read_loop(self._serial), name=f"{port} reader"
        )

    async def close(self) -> None:
        ser, self._serial = self._serial, None
        reader, self._reader = self._reader, None
        if reader and reader is not asyncio.current_task():
            reader.cancel()
        if ser:
            log.debug("Closing %s", self.port)
            try:
                ser.close()
            except OSError:
                log.warning("Can't close %s", self.port, exc_info=True)

    async def write(self, data: bytes) -> None:
        ser = self._serial
        if ser is None or self._failed:
            raise _exceptions.SerialIoClosed("Port is not open", self.port)
        try:
            ser.write(data)
            ser.flush()
        except OSError as ex:
            message = "Serial write error"
            error = _exceptions.SerialIoException(message, self.port)
            self._fail(f"{error} ({ex})")
            raise error from ex
        _transport.data_log.debug("%s: Wrote %db", self.port, len(data))
        await asyncio.sleep(0)

    def _fail(self, message: str) -> bool:
        reported = super()._fail(message)
        if reported:
            ser, self._serial = self._serial, None
            if self._reader is not asyncio.current_task() and self._reader:
                self._reader.cancel()
            self._reader = None
            try:
                ser.close()
            except OSError:
                log.debug("Can't close failed %s", self.port, exc_info=True)
        return reported

    async def _read_loop(self, ser: serial.SerialBase) -> None:
        while self._serial is ser:
            try:
                incoming = ser.read(ser.in_waiting or 1)
            except OSError as ex:
                self._fail(f"Serial read error ({ex})")
                return
            if incoming:
                self._deliver(incoming)
                await asyncio.sleep(0)
            else:
                await asyncio.sleep(POLL_INTERVAL)
