"""Command line entry point: version information and backup verification."""

from __future__ import annotations

import argparse
import hashlib
import logging
import signal
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from .schema import META_FILE, BackupMeta, DBInfo, TableInfo, load_backup_tables
from .storage import create, define_flags, parse_backend_from_args
from .version import log_arguments, log_info, print_info

log = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "dpanic": logging.CRITICAL,
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}
_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


def verify_backup(storage: Any) -> dict[tuple[str, str], tuple[int, int, int]]:
    """Check every backup file against its recorded SHA-256.

    Returns, per (database, table), the XOR of its files' CRC64 and the
    total keys and bytes. Raises ValueError on the first changed file.
    """
    meta = BackupMeta.from_bytes(storage.read(META_FILE))
    databases = load_backup_tables(meta)
    summaries: dict[tuple[str, str], tuple[int, int, int]] = {}
    for schema in meta.schemas:
        db_info = DBInfo.from_json(schema.db)
        table_info = TableInfo.from_json(schema.table)
        table = databases[db_info.name].get_table(table_info.name)
        crc = total_kvs = total_bytes = 0
        for file in table.files if table is not None else []:
            crc ^= file.crc64xor
            total_kvs += file.total_kvs
            total_bytes += file.total_bytes
            log.info(
                "file info, table=%s file=%s crc64xor=%d totalKvs=%d totalBytes=%d",
                table_info.name, file.name, file.crc64xor, file.total_kvs, file.total_bytes,
            )
            digest = hashlib.sha256(storage.read(file.name)).digest()
            if digest != file.sha256:
                raise ValueError(
                    f"\nbackup data checksum failed: {file.name} may be changed\n"
                    f"calculated sha256 is {digest.hex()},\n"
                    f"origin sha256 is {file.sha256.hex()}"
                )
        log.info(
            "table info, table=%s CRC64=%d totalKvs=%d totalBytes=%d "
            "schemaTotalKvs=%d schemaTotalBytes=%d schemaCRC64=%d",
            table_info.name, crc, total_kvs, total_bytes,
            schema.total_kvs, schema.total_bytes, schema.crc64xor,
        )
        summaries[(db_info.name, table_info.name)] = (crc, total_kvs, total_bytes)
    return summaries


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with its global options and subcommands."""
    parser = argparse.ArgumentParser(
        prog="br", description="br is a TiDB/TiKV cluster backup restore tool."
    )
    parser.add_argument("-u", "--pd", default="127.0.0.1:2379", help="PD address")
    parser.add_argument("--ca", default="", help="CA certificate path for TLS connection")
    parser.add_argument("--cert", default="", help="Certificate path for TLS connection")
    parser.add_argument("--key", default="", help="Private key path for TLS connection")
    parser.add_argument(
        "-s", "--storage", default="",
        help='specify the url where backup storage, eg, "local:///path/to/save"',
    )
    parser.add_argument("-L", "--log-level", default="info", help="Set the log level")
    parser.add_argument(
        "--log-file", default="",
        help="Set the log file path. If not set, logs will output to stderr",
    )
    parser.add_argument(
        "--status-addr", default="",
        help="Set the HTTP listening address for the status report service. "
        "Set to empty string to disable",
    )
    define_flags(parser)
    parser.add_argument("--slow-log-file", default="", help=argparse.SUPPRESS)

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("version", help="output version information")
    meta = commands.add_parser("meta", help="show meta data of a cluster")
    meta_commands = meta.add_subparsers(dest="meta_command")
    meta_commands.add_parser("checksum", help=argparse.SUPPRESS)
    return parser


class _StatusHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        body = b"ok\n"
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        log.debug("status: " + format, *args)


def _start_status_server(addr: str) -> None:
    host, _, port = addr.rpartition(":")
    try:
        server = ThreadingHTTPServer((host, int(port)), _StatusHandler)
    except (OSError, ValueError) as exc:
        log.warning("fail to start status server, addr=%s: %s", addr, exc)
        return
    log.info("start status server, addr=%s", addr)
    threading.Thread(target=server.serve_forever, name="status", daemon=True).start()


def _init(args: argparse.Namespace) -> None:
    level = _LEVELS.get(args.log_level.lower())
    if level is None:
        raise ValueError(f"unrecognized level: {args.log_level}")
    logger = logging.getLogger("kvbackup")
    for handler in list(logger.handlers):
        if getattr(handler, "_kvbackup_cli", False):
            logger.removeHandler(handler)
            handler.close()
    handler: logging.Handler
    if args.log_file:
        handler = logging.FileHandler(args.log_file)
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler._kvbackup_cli = True  # type: ignore[attr-defined]
    handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)
    if args.status_addr:
        _start_status_server(args.status_addr)


def _has_log_file(args: argparse.Namespace) -> bool:
    return bool(args.log_file)


class _Signalled(Exception):
    def __init__(self, signum: int) -> None:
        super().__init__(signum)
        self.signum = signum


def _on_signal(signum: int, _frame: Any) -> None:
    raise _Signalled(signum)


def _install_signal_handlers() -> dict[int, Any]:
    previous: dict[int, Any] = {}
    for name in ("SIGHUP", "SIGTERM", "SIGQUIT"):
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        try:
            previous[signum] = signal.signal(signum, _on_signal)
        except (ValueError, OSError):
            continue
    return previous


def _run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    if args.command == "version":
        print_info()
        return 0
    if args.command == "meta":
        _init(args)
        log_info()
        log_arguments(args)
        if args.meta_command != "checksum":
            parser.parse_args(["meta", "--help"])
            return 0
        storage = create(parse_backend_from_args(args, "storage"))
        verify_backup(storage)
        print("backup data checksum succeed!")
        return 0
    parser.print_help()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the command line; return the exit status."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 1
    previous = _install_signal_handlers()
    try:
        return _run(args, parser)
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 1
    except _Signalled as exc:
        print(f"\nGot signal [{signal.Signals(exc.signum).name}] to exit.")
        return 0 if exc.signum == signal.SIGTERM else 1
    except KeyboardInterrupt:
        print("\nGot signal [interrupt] to exit.")
        return 1
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


if __name__ == "__main__":
    sys.exit(main())