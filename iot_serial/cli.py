#!/usr/bin/env python3

"""CLI tool to find a board and talk to its REPL"""

import argparse
import asyncio
import datetime
import logging
import pathlib
import re
import sys

import ok_logging_setup

import iot_serial
from iot_serial import _backends

ok_logging_setup.skip_traceback_for(iot_serial.ReplException)
ok_logging_setup.skip_traceback_for(iot_serial.SerialScanException)
ok_logging_setup.skip_traceback_for(iot_serial.TransportNotSupported)


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--port", "-p", help="port path or URL (default: auto)")
    parser.add_argument("--baud", "-b", type=int, default=115200)
    parser.add_argument(
        "--transport",
        "-t",
        choices=sorted(_backends.TRANSPORTS),
        help="serial backend (default: detected)",
    )
    parser.add_argument(
        "--timeout", type=float, default=2.0, help="seconds per command"
    )

    subparsers = parser.add_subparsers(title="actions", dest="command")
    list_parser = subparsers.add_parser("list", help="List candidate ports")
    list_parser.add_argument(
        "--verbose", "-v", action="store_true", help="print all attributes"
    )

    exec_parser = subparsers.add_parser("exec", help="Run one REPL command")
    exec_parser.add_argument("statement", help="command text")

    run_parser = subparsers.add_parser("run", help="Run a program on the board")
    run_parser.add_argument("file", type=pathlib.Path)

    upload_parser = subparsers.add_parser(
        "upload", help="Write a file to the board"
    )
    upload_parser.add_argument("file", type=pathlib.Path)
    upload_parser.add_argument("--name", "-n", help="name on the board")

    subparsers.add_parser("monitor", help="Print everything the board sends")
    subparsers.add_parser("forget", help="Clear the last-device record")

    ask_parser = subparsers.add_parser("ask", help="Ask the coding assistant")
    ask_parser.add_argument("message", nargs="+")
    ask_parser.add_argument("--context", "-c", type=pathlib.Path)

    args = parser.parse_args()
    if not args.command:
        args = parser.parse_args([*sys.argv[1:], "list"])

    ok_logging_setup.install({"OK_LOGGING_LEVEL": "info"})

    if args.command == "list":
        list_ports(args)
    elif args.command == "forget":
        iot_serial.DeviceHistory().forget()
        logging.info("🧹 Forgot last device")
    elif args.command == "ask":
        ask(args)
    else:
        asyncio.run(run_device_command(args))


def list_ports(args: argparse.Namespace):
    session = iot_serial.SerialSession(session_options(args))
    found = iot_serial.rank_for_auto_connect(session.list_ports())
    if not found:
        ok_logging_setup.exit("❌ No serial ports found")

    num = len(found)
    logging.info("🔌 %d serial port%s found", num, "" if num == 1 else "s")
    last = session.history.load()
    for port in found:
        if args.verbose:
            print(format_detail(port, last), end="\n\n")
        else:
            print(format_line(port, last))


def ask(args: argparse.Namespace):
    context = args.context.read_text() if args.context else ""
    reply = iot_serial.AssistantClient().ask(" ".join(args.message), context)
    if not reply.ok:
        ok_logging_setup.exit(f"❌ Assistant: {reply.error}")
    print(reply.response)


async def run_device_command(args: argparse.Namespace):
    async with iot_serial.SerialSession(session_options(args)) as session:
        if args.port:
            logging.info("🔎 Connecting to %s", args.port)
        else:
            logging.info("🔎 Looking for a board...")
        if not await session.connect(args.port, args.baud):
            ok_logging_setup.exit(f"🚫 Can't connect: {session.last_error}")

        repl = iot_serial.ReplProtocol(
            session, iot_serial.ReplOptions(timeout=args.timeout)
        )
        if args.command == "exec":
            print(await repl.send_command_and_wait(args.statement))
        elif args.command == "run":
            for line in await repl.execute_program(args.file.read_text()):
                print(line)
        elif args.command == "upload":
            name = args.name or args.file.name
            await repl.upload_file(name, args.file.read_text())
            logging.info("✅ Uploaded %s as %s", args.file, name)
        elif args.command == "monitor":
            await monitor(session)


async def monitor(session: iot_serial.SerialSession):
    lost = asyncio.Event()
    session.on("data", lambda text: print(text, end="", flush=True))
    session.on("error", lambda message: logging.warning("⚠️ %s", message))
    session.on("disconnected", lost.set)
    logging.info("👀 Monitoring (Ctrl-C to stop)")
    await lost.wait()
    ok_logging_setup.exit("🔌 Board disconnected")


def session_options(args: argparse.Namespace) -> iot_serial.SessionOptions:
    return iot_serial.SessionOptions(
        transport=args.transport,
        serial=iot_serial.SerialOptions(baud=args.baud),
    )


def format_line(
    port: iot_serial.PortDescriptor, last: iot_serial.LastDevice | None
) -> str:
    words = [port.path]
    if port.vid is not None and port.pid is not None:
        words.append(f"{port.vid:04x}:{port.pid:04x}")
    words.extend(w for w in (port.serial_number, port.manufacturer) if w)
    if port.description:
        words.append(format_value(port.description))
    if iot_serial.is_known_device(port):
        words.append("✅")
    if last and last.path == port.path:
        words.append(f"(last used {format_age(last)} ago)")
    return " ".join(words)


def format_detail(
    port: iot_serial.PortDescriptor, last: iot_serial.LastDevice | None
) -> str:
    label = f"Port: {port.path}"
    if iot_serial.is_known_device(port):
        label += " ✅"
    if last and last.path == port.path:
        label += f" (last used {format_age(last)} ago)"
    return label + "".join(
        f"\n  {k}={format_value(v)}" for k, v in port.attr.items()
    )


def format_value(v: str) -> str:
    return repr(v) if re.search(r"""[\s!"'*=?\\]""", v) else v


def format_age(last: iot_serial.LastDevice) -> str:
    return format_timedelta(datetime.timedelta(seconds=last.age))


def format_timedelta(d: datetime.timedelta) -> str:
    if d.days < 0:
        return f"-{format_timedelta(-d)}"
    h, m, s = d.seconds // 3600, (d.seconds % 3600) // 60, d.seconds % 60
    if d.days:
        return f"{d.days}d+{h:02}:{m:02}:{s:02}s"
    elif h:
        return f"{h}:{m:02}:{s:02}s"
    elif m:
        return f"{m}:{s:02}s"
    else:
        return f"{d.seconds + d.microseconds * 1e-6:.2f}s"


if __name__ == "__main__":
    main()
