"""Exception hierarchy for iot_serial"""


class SerialException(OSError):
    def __init__(
        self,
        message: str,
        port: str | None = None,
    ):
        super().__init__(f"{port}: {message}" if port else message)
        self.port = port


class SerialIoException(SerialException):
    pass


class SerialIoClosed(SerialIoException):
    pass


class SerialOpenException(SerialException):
    pass


class SerialOpenBusy(SerialOpenException):
    pass


class SerialScanException(SerialException):
    pass


class TransportNotSupported(SerialException):
    pass


class ReplException(RuntimeError):
    """Base for failures of a REPL command on the device"""

    summary = "device error"

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output

    def __str__(self) -> str:
        return f"{self.summary}: {self.args[0]}"


class ReplNotConnected(ReplException):
    summary = "not connected"


class ReplTimeout(ReplException):
    summary = "timed out"


class ReplDisconnected(ReplException):
    summary = "device error"


class ReplWriteFailed(ReplException):
    summary = "device error"


class ReplDeviceError(ReplException):
    summary = "device error"
