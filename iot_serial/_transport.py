"""Common interface for the byte-level serial backends."""

import abc
import logging
import typing
from collections.abc import Callable

import pydantic

from iot_serial import _locking
from iot_serial import _scanning

DataCallback = Callable[[bytes], None]
ErrorCallback = Callable[[str], None]
ClosedCallback = Callable[[], None]

log = logging.getLogger("iot_serial.transport")
data_log = logging.getLogger(log.name + ".data")


class SerialOptions(pydantic.BaseModel):
    baud: int = pydantic.Field(default=115200, gt=0)
    sharing: _locking.SharingType = "exclusive"
    write_timeout: float = 0.5


class Transport(abc.ABC):
    """Raw open/close/read/write over one port, always 8N1 without flow
    control. Callbacks passed to subscribe() run on the event loop that
    opened the port, in arrival order. An I/O failure on an open port is
    reported as exactly one on_error() followed by one on_closed(); an
    explicit close() reports nothing."""

    kind: typing.ClassVar[str] = ""

    def __init__(self, opts: SerialOptions = SerialOptions()):
        self.opts = opts
        self.port: str | None = None
        self._on_data: DataCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._on_closed: ClosedCallback | None = None
        self._failed = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.port!r})"

    @classmethod
    @abc.abstractmethod
    def list_ports(cls) -> list[_scanning.PortDescriptor]:
        """Ports this backend could open right now"""

    @property
    @abc.abstractmethod
    def is_open(self) -> bool: ...

    @abc.abstractmethod
    async def open(self, port: str, baud: int) -> None:
        """Claims the port; raises SerialOpenException on failure"""

    @abc.abstractmethod
    async def close(self) -> None:
        """Releases the port; safe to repeat"""

    @abc.abstractmethod
    async def write(self, data: bytes) -> None:
        """Sends bytes as given; raises SerialIoException on failure"""

    def subscribe(
        self,
        on_data: DataCallback,
        on_error: ErrorCallback,
        on_closed: ClosedCallback,
    ) -> None:
        self._on_data = on_data
        self._on_error = on_error
        self._on_closed = on_closed

    def _deliver(self, data: bytes) -> None:
        """Must be run from the event loop."""

        data_log.debug("%s: Read %db", self.port, len(data))
        if data and self._on_data and self.is_open and not self._failed:
            self._on_data(data)

    def _fail(self, message: str) -> bool:
        """Must be run from the event loop. False if already reported."""

        if self._failed or not self.is_open:
            return False
        self._failed = True
        log.warning("%s: %s", self.port, message)
        if self._on_error:
            self._on_error(message)
        if self._on_closed:
            self._on_closed()
        return True
