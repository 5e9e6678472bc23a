"""
Device link for an IoT IDE: serial port discovery, a single managed
connection to a microcontroller board, and command exchange with the
board's interactive interpreter (REPL).
"""

from beartype.claw import beartype_this_package as _beartype_me

# ruff: noqa: E402
_beartype_me()

from iot_serial._assistant import (
    AssistantClient,
    AssistantReply,
)

from iot_serial._backends import (
    host_serial_supported,
    select_transport,
)

from iot_serial._exceptions import (
    ReplDeviceError,
    ReplDisconnected,
    ReplException,
    ReplNotConnected,
    ReplTimeout,
    ReplWriteFailed,
    SerialException,
    SerialIoClosed,
    SerialIoException,
    SerialOpenBusy,
    SerialOpenException,
    SerialScanException,
    TransportNotSupported,
)

from iot_serial._history import DeviceHistory, LastDevice
from iot_serial._host import HostTransport
from iot_serial._inprocess import InProcessTransport
from iot_serial._locking import SharingType
from iot_serial._repl import ReplOptions, ReplProtocol
from iot_serial._scanning import (
    PortDescriptor,
    is_known_device,
    list_ports,
    rank_for_auto_connect,
)
from iot_serial._session import (
    Connection,
    SerialSession,
    SessionOptions,
    SessionState,
)
from iot_serial._transport import SerialOptions, Transport

__all__ = [n for n in dir() if not n.startswith("_")]
