import logging
import os
import sys

from iot_serial import _exceptions
from iot_serial import _host
from iot_serial import _inprocess
from iot_serial import _transport

log = logging.getLogger("iot_serial.transport")

TRANSPORTS: dict[str, type[_transport.Transport]] = {
    _host.HostTransport.kind: _host.HostTransport,
    _inprocess.InProcessTransport.kind: _inprocess.InProcessTransport,
}


def host_serial_supported() -> bool:
    """True where OS serial devices can be enumerated and opened"""

    return os.name == "posix" and sys.platform not in ("emscripten", "wasi")


def select_transport(kind: str | None = None) -> type[_transport.Transport]:
    """Picks the backend class once, from 'kind', $IOT_SERIAL_TRANSPORT,
    or what this environment can do"""

    kind = kind or os.getenv("IOT_SERIAL_TRANSPORT") or None
    if kind:
        if not (backend := TRANSPORTS.get(kind)):
            known = ", ".join(TRANSPORTS)
            message = f"Unknown transport {kind!r} (known: {known})"
            raise _exceptions.TransportNotSupported(message)
        if backend is _host.HostTransport and not host_serial_supported():
            message = f"Host serial is not available on {sys.platform}"
            raise _exceptions.TransportNotSupported(message)
    elif host_serial_supported():
        backend = _host.HostTransport
    else:
        backend = _inprocess.InProcessTransport

    log.debug("Using %s transport", backend.kind)
    return backend
