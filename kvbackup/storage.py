"""Storage backends: URL parsing, option handling and the concrete stores."""

from __future__ import annotations

import abc
import argparse
import os
from dataclasses import dataclass, field
from typing import NamedTuple, Union
from urllib.parse import quote, unquote


class StorageError(Exception):
    """Raised when a storage URL or backend cannot be used."""


@dataclass
class LocalBackend:
    """A directory on the local file system."""

    path: str = ""


@dataclass
class NoopBackend:
    """A backend that stores nothing."""


@dataclass
class S3Backend:
    """An S3 bucket with a key prefix."""

    bucket: str = ""
    prefix: str = ""
    endpoint: str = ""
    region: str = ""


Backend = Union[LocalBackend, NoopBackend, S3Backend]

_S3_ENDPOINT_OPTION = "s3.endpoint"
_S3_REGION_OPTION = "s3.region"


@dataclass
class S3BackendOptions:
    """Options for configuring the S3 storage."""

    endpoint: str = ""
    region: str = ""

    def apply(self, s3: S3Backend) -> None:
        """Copy the options onto an S3 backend description."""
        if not self.endpoint and not self.region:
            raise StorageError("must provide either 's3.region' or 's3.endpoint'")
        s3.endpoint = self.endpoint
        s3.region = self.region


@dataclass
class BackendOptions:
    """Backend settings that the storage URL does not express."""

    s3: S3BackendOptions = field(default_factory=S3BackendOptions)


class _URL(NamedTuple):
    scheme: str
    host: str
    path: str


def _split_scheme(raw: str) -> tuple[str, str]:
    for i, char in enumerate(raw):
        if char.isascii() and char.isalpha():
            continue
        if char.isascii() and (char.isdigit() or char in "+-."):
            if i == 0:
                return "", raw
            continue
        if char == ":":
            if i == 0:
                raise ValueError("missing protocol scheme")
            return raw[:i].lower(), raw[i + 1:]
        return "", raw
    return "", raw


def _parse_url(raw: str) -> _URL:
    try:
        rest = raw.partition("#")[0]
        scheme, rest = _split_scheme(rest)
        rest = rest.partition("?")[0]
        if scheme and not rest.startswith("/"):
            # Opaque URL such as "net:storage": it has no path.
            return _URL(scheme, "", "")
        if not scheme and not rest.startswith("/"):
            if ":" in rest.partition("/")[0]:
                raise ValueError("first path segment in URL cannot contain colon")
        host = ""
        if rest.startswith("//"):
            authority, slash, tail = rest[2:].partition("/")
            host = authority.rpartition("@")[2]
            if host.count("[") != host.count("]"):
                raise ValueError(f"invalid host {host!r}")
            rest = slash + tail
        return _URL(scheme, host, unquote(rest))
    except ValueError as exc:
        raise StorageError(f"parse {raw}: {exc}") from exc


def parse_backend(raw_url: str, options: BackendOptions | None) -> Backend:
    """Build a structured backend description from a storage URL."""
    if not raw_url:
        raise StorageError("empty store is not allowed")
    url = _parse_url(raw_url)
    if url.scheme == "":
        raise StorageError(
            f"please specify the storage type (e.g. --storage 'local://{url.path}')"
        )
    if url.scheme in ("local", "file"):
        return LocalBackend(path=url.path)
    if url.scheme == "noop":
        return NoopBackend()
    if url.scheme == "s3":
        s3 = S3Backend(bucket=url.host, prefix=url.path)
        if options is not None:
            options.s3.apply(s3)
        return s3
    raise StorageError(f"storage {url.scheme} not support yet")


def _url_string(scheme: str, host: str, path: str) -> str:
    parts = []
    if scheme:
        parts.append(scheme + ":")
    if scheme or host:
        if host or path:
            parts.append("//")
        parts.append(quote(host, safe="!$&'()*+,;=:[]<>\""))
    escaped = quote(path, safe="/$&+,:;=@")
    if escaped and not escaped.startswith("/") and host:
        parts.append("/")
    parts.append(escaped)
    return "".join(parts)


def format_backend_url(backend: Backend) -> str:
    """Return a URL that reconstructs the backend, without secret options."""
    if isinstance(backend, LocalBackend):
        return _url_string("local", "", backend.path)
    if isinstance(backend, NoopBackend):
        return _url_string("noop", "", "/")
    if isinstance(backend, S3Backend):
        return _url_string("s3", backend.bucket, backend.prefix)
    return ""


class ExternalStorage(abc.ABC):
    """A kind of file system storage."""

    @abc.abstractmethod
    def write(self, name: str, data: bytes) -> None:
        """Write a file to the storage."""

    @abc.abstractmethod
    def read(self, name: str) -> bytes:
        """Read a file from the storage."""

    @abc.abstractmethod
    def file_exists(self, name: str) -> bool:
        """Return True if the file exists."""


def _path_exists(path: str) -> bool:
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def _mkdir_all(base: str) -> None:
    mask = os.umask(0)
    try:
        os.makedirs(base, mode=0o755, exist_ok=True)
    finally:
        os.umask(mask)


class LocalStorage(ExternalStorage):
    """Storage in a directory on the local file system."""

    def __init__(self, base: str | os.PathLike[str]) -> None:
        self.base = os.fspath(base)
        if not _path_exists(self.base):
            _mkdir_all(self.base)

    def _path(self, name: str) -> str:
        return os.path.join(self.base, name)

    def write(self, name: str, data: bytes) -> None:
        fd = os.open(self._path(name), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)

    def read(self, name: str) -> bytes:
        with open(self._path(name), "rb") as handle:
            return handle.read()

    def file_exists(self, name: str) -> bool:
        return _path_exists(self._path(name))


class NoopStorage(ExternalStorage):
    """Storage that discards writes and holds no files."""

    def write(self, name: str, data: bytes) -> None:
        return None

    def read(self, name: str) -> bytes:
        return b""

    def file_exists(self, name: str) -> bool:
        return False


def create(backend: Backend) -> ExternalStorage:
    """Create the storage for a backend description."""
    if isinstance(backend, LocalBackend):
        return LocalStorage(backend.path)
    if isinstance(backend, NoopBackend):
        return NoopStorage()
    raise StorageError(f"storage {type(backend).__name__} is not supported yet")


def define_flags(parser: argparse.ArgumentParser) -> None:
    """Add the options of every backend to an argument parser."""
    parser.add_argument(
        "--" + _S3_ENDPOINT_OPTION,
        dest="s3_endpoint",
        default="",
        help=argparse.SUPPRESS,
    )
    parser.add_argument(
        "--" + _S3_REGION_OPTION,
        dest="s3_region",
        default="",
        help="Set the AWS region",
    )


def _flag_value(args: argparse.Namespace, flag: str) -> str:
    dest = flag.replace("-", "_").replace(".", "_")
    try:
        return getattr(args, dest)
    except AttributeError:
        raise StorageError(f"flag accessed but not defined: {flag}") from None


def backend_options_from_args(args: argparse.Namespace) -> BackendOptions:
    """Collect backend options from parsed arguments."""
    return BackendOptions(
        s3=S3BackendOptions(
            endpoint=_flag_value(args, _S3_ENDPOINT_OPTION),
            region=_flag_value(args, _S3_REGION_OPTION),
        )
    )


def parse_backend_from_args(args: argparse.Namespace, storage_flag: str) -> Backend:
    """Read the storage URL and backend options from parsed arguments."""
    raw_url = _flag_value(args, storage_flag)
    options = backend_options_from_args(args)
    return parse_backend(raw_url, options)