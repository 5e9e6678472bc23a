"""Command/response exchange with a board's interactive interpreter.

The REPL has no message framing: a response is recognized by a terminal
pattern (a newline or the ">>>" prompt) showing up in the byte stream after
the command was written. Exchanges therefore have to happen one at a time,
which ReplProtocol enforces with a lock; callers that overlap simply queue.
"""

import asyncio
import logging

import pydantic

from iot_serial import _exceptions
from iot_serial import _session

INTERRUPT = b"\x03"
CONTINUATION = "\n... "

log = logging.getLogger("iot_serial.repl")


class ReplOptions(pydantic.BaseModel):
    timeout: float = pydantic.Field(default=2.0, gt=0)
    line_ending: str = "\n"
    prompt: str = ">>>"
    line_delay: float = pydantic.Field(default=0.05, ge=0)
    settle_delay: float = pydantic.Field(default=0.1, ge=0)
    drain_time: float = pydantic.Field(default=0.2, ge=0)


def escape_literal(text: str) -> str:
    """Escapes 'text' for a single-quoted string literal on the device"""

    return text.replace("\\", "\\\\").replace("'", "\\'")


def clean_output(response: str, prompt: str = ">>>") -> list[str]:
    """Output lines of a response, minus blanks and prompts"""

    lines = response.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return [
        line.strip()
        for line in lines
        if line.strip() and prompt not in line and line.strip() != "..."
    ]


def find_terminal(
    text: str, patterns: tuple[str, ...]
) -> tuple[int, str] | None:
    """Earliest (index, pattern) of any of 'patterns' in 'text'"""

    found = [(i, p) for p in patterns if (i := text.find(p)) >= 0]
    if not found:
        return None
    return min(found, key=lambda match: (match[0], -len(match[1])))


class ReplProtocol:
    def __init__(
        self,
        session: _session.SerialSession,
        opts: ReplOptions = ReplOptions(),
    ):
        self.session = session
        self.opts = opts
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"ReplProtocol({self.session!r})"

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def send_command_and_wait(
        self,
        command: str,
        timeout: float | int | None = None,
        *,
        until: tuple[str, ...] | None = None,
    ) -> str:
        """Writes one command line and returns the trimmed text received
        before the first terminal pattern ('until', by default a newline or
        the prompt). Raises ReplTimeout if none shows up in time."""

        self._require_connection()
        until = until or ("\n", self.opts.prompt)
        async with self._lock:
            response = await self._exchange(command, timeout, until)
        match = find_terminal(response, until)
        assert match is not None
        return response[: match[0]].strip()

    async def interrupt(self) -> None:
        """Sends Ctrl-C, bypassing the command queue"""

        self._require_connection()
        if not await self.session.send(INTERRUPT):
            raise _exceptions.ReplWriteFailed("Can't send interrupt")

    async def execute_program(self, source: str) -> list[str]:
        """Interrupts whatever is running, then types 'source' line by line
        and returns the output lines. A failure part way through ends the
        run; what was collected is returned with an "Error: ..." line."""

        self._require_connection()
        async with self._lock:
            outputs: list[str] = []
            try:
                await self.interrupt()
                await asyncio.sleep(self.opts.settle_delay)
                if stale := await self._drain(self.opts.drain_time):
                    log.debug("Drained %d chars after interrupt", len(stale))

                in_block = False
                for line in source.splitlines():
                    if not line.strip():
                        continue
                    if in_block and not line[:1].isspace():
                        in_block = await self._run_line("", outputs)
                    in_block = await self._run_line(line, outputs)
                    await asyncio.sleep(self.opts.line_delay)
                if in_block:
                    await self._run_line("", outputs)
            except _exceptions.ReplException as exc:
                log.warning("Program stopped: %s", exc)
                outputs.extend(clean_output(exc.output, self.opts.prompt))
                outputs.append(f"Error: {exc}")
            return outputs

    async def upload_file(self, filename: str, content: str) -> None:
        """Recreates 'filename' on the device by typing Python statements
        that write 'content' one line at a time. A failure stops the upload
        and may leave a partial file behind."""

        self._require_connection()
        async with self._lock:
            lines = content.splitlines()
            log.info("⬆️ Uploading %s (%d lines)", filename, len(lines))
            name = escape_literal(filename)
            await self._statement(f"f = open('{name}', 'w')")
            await asyncio.sleep(self.opts.settle_delay)
            for line in lines:
                await self._statement(f"f.write('{escape_literal(line)}\\n')")
                await asyncio.sleep(self.opts.line_delay)
            await self._statement("f.close()")
            await asyncio.sleep(self.opts.settle_delay)
            log.info("Uploaded %s", filename)

    def _require_connection(self) -> None:
        if not self.session.is_connected:
            raise _exceptions.ReplNotConnected("No device connected")

    async def _run_line(self, line: str, outputs: list[str]) -> bool:
        """Runs one program line; True if the device wants more of a block"""

        until = (self.opts.prompt, CONTINUATION)
        response = await self._exchange(line, self.opts.timeout, until)
        outputs.extend(clean_output(response, self.opts.prompt))
        return response.endswith(CONTINUATION)

    async def _statement(self, statement: str) -> str:
        until = (self.opts.prompt,)
        response = await self._exchange(statement, self.opts.timeout, until)
        if "Traceback" in response:
            lines = clean_output(response, self.opts.prompt)
            message = lines[-1] if lines else "Traceback"
            raise _exceptions.ReplDeviceError(message, response)
        return response

    async def _drain(self, duration: float | int) -> str:
        chunks: list[str] = []
        self.session.on("data", chunks.append)
        try:
            await asyncio.sleep(duration)
        finally:
            self.session.off("data", chunks.append)
        return "".join(chunks)

    async def _exchange(
        self,
        command: str,
        timeout: float | int | None,
        until: tuple[str, ...],
    ) -> str:
        """Returns what arrived through the end of the first terminal
        pattern; anything after it is dropped. Run with self._lock held."""

        self._require_connection()
        timeout = self.opts.timeout if timeout is None else timeout

        loop = asyncio.get_running_loop()
        done: asyncio.Future[str] = loop.create_future()
        buffer: list[str] = []

        def on_data(text: str) -> None:
            buffer.append(text)
            if done.done():
                return
            received = "".join(buffer)
            if match := find_terminal(received, until):
                index, pattern = match
                done.set_result(received[: index + len(pattern)])

        def on_disconnected() -> None:
            if not done.done():
                message = f"Device disconnected during {command!r}"
                done.set_exception(
                    _exceptions.ReplDisconnected(message, "".join(buffer))
                )

        self.session.on("data", on_data)
        self.session.on("disconnected", on_disconnected)
        try:
            log.debug("Sending %r", command)
            if not await self.session.send(command + self.opts.line_ending):
                if done.done():
                    done.result()  # raises ReplDisconnected
                reason = self.session.last_error or "not connected"
                message = f"Can't send {command!r} ({reason})"
                raise _exceptions.ReplWriteFailed(message)
            try:
                response = await asyncio.wait_for(done, timeout)
            except asyncio.TimeoutError:
                message = f"No response to {command!r} within {timeout:g}s"
                partial = "".join(buffer)
                raise _exceptions.ReplTimeout(message, partial) from None
        finally:
            self.session.off("data", on_data)
            self.session.off("disconnected", on_disconnected)

        log.debug("Response %r", response)
        return response
