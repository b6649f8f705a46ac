"""Schema records of a backup and the key encoding of table data."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any

META_FILE = "backupmeta"
STATE_PUBLIC = "public"

TABLE_PREFIX = b"t"
RECORD_PREFIX_SEP = b"_r"
INDEX_PREFIX_SEP = b"_i"

_SIGN_MASK = 1 << 63
_UINT64_MASK = (1 << 64) - 1
_ENC_GROUP_SIZE = 8
_ENC_MARKER = 0xFF


def encode_int(value: int) -> bytes:
    """Encode a signed 64-bit integer so that byte order matches numeric order."""
    return ((value & _UINT64_MASK) ^ _SIGN_MASK).to_bytes(8, "big")


def _decode_int(data: bytes) -> int:
    if len(data) < 8:
        raise ValueError("insufficient bytes to decode value")
    unsigned = int.from_bytes(data[:8], "big") ^ _SIGN_MASK
    return unsigned - (1 << 64) if unsigned >= _SIGN_MASK else unsigned


def encode_bytes(data: bytes) -> bytes:
    """Encode bytes in memcomparable form: padded 8-byte groups with markers."""
    out = bytearray()
    for offset in range(0, len(data) + 1, _ENC_GROUP_SIZE):
        group = data[offset:offset + _ENC_GROUP_SIZE]
        pad = _ENC_GROUP_SIZE - len(group)
        out += group
        out += b"\x00" * pad
        out.append(_ENC_MARKER - pad)
    return bytes(out)


def encode_table_prefix(table_id: int) -> bytes:
    """Return the key prefix of everything stored for a table."""
    return TABLE_PREFIX + encode_int(table_id)


def encode_row_key(table_id: int, handle: bytes) -> bytes:
    """Return the record key of an already encoded row handle."""
    return encode_table_prefix(table_id) + RECORD_PREFIX_SEP + handle


def encode_table_index_prefix(table_id: int, index_id: int) -> bytes:
    """Return the key prefix of one index of a table."""
    return encode_table_prefix(table_id) + INDEX_PREFIX_SEP + encode_int(index_id)


def decode_table_id(key: bytes) -> int:
    """Return the table id a key belongs to, or 0 if it is not a table key."""
    if not key.startswith(TABLE_PREFIX):
        return 0
    try:
        return _decode_int(key[len(TABLE_PREFIX):])
    except ValueError:
        return 0


def prefix_next(key: bytes) -> bytes:
    """Return the smallest key greater than every key with the given prefix."""
    stripped = key.rstrip(b"\xff")
    if not stripped:
        return bytes(key) + b"\x00"
    carried = len(key) - len(stripped)
    return stripped[:-1] + bytes([stripped[-1] + 1]) + b"\x00" * carried


def enclose_name(name: str) -> str:
    """Quote a name for use in SQL."""
    return "`" + name.replace("`", "``") + "`"


def _loads(data: bytes | str) -> dict[str, Any]:
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode()
    value = json.loads(data)
    if not isinstance(value, dict):
        raise ValueError("expected a JSON object")
    return value


def _dumps(value: dict[str, Any]) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


@dataclass
class IndexInfo:
    """An index of a table."""

    id: int
    name: str
    state: str = STATE_PUBLIC

    def _to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "idx_name": self.name, "state": self.state}

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> IndexInfo:
        return cls(
            id=int(data["id"]),
            name=str(data["idx_name"]),
            state=str(data.get("state", STATE_PUBLIC)),
        )


@dataclass
class TableInfo:
    """The schema of a table; ``partition`` lists partition ids, if any."""

    id: int = 0
    name: str = ""
    indices: list[IndexInfo] = field(default_factory=list)
    partition: list[int] | None = None
    auto_inc_id: int = 0
    charset: str = ""
    collate: str = ""

    def _to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "index_info": [index._to_dict() for index in self.indices],
            "partition": None if self.partition is None else list(self.partition),
            "auto_inc_id": self.auto_inc_id,
            "charset": self.charset,
            "collate": self.collate,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> TableInfo:
        partition = data.get("partition")
        return cls(
            id=int(data.get("id", 0)),
            name=str(data.get("name", "")),
            indices=[IndexInfo._from_dict(item) for item in data.get("index_info") or []],
            partition=None if partition is None else [int(pid) for pid in partition],
            auto_inc_id=int(data.get("auto_inc_id", 0)),
            charset=str(data.get("charset", "")),
            collate=str(data.get("collate", "")),
        )

    def to_json(self) -> bytes:
        """Serialise the table schema."""
        return _dumps(self._to_dict())

    @classmethod
    def from_json(cls, data: bytes | str) -> TableInfo:
        """Parse a table schema; raise ValueError if it is malformed."""
        try:
            return cls._from_dict(_loads(data))
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"invalid table info: {exc}") from exc


@dataclass
class DBInfo:
    """The schema of a database."""

    id: int = 0
    name: str = ""
    tables: list[TableInfo] = field(default_factory=list)
    charset: str = ""
    collate: str = ""

    def to_json(self) -> bytes:
        """Serialise the database schema."""
        return _dumps({
            "id": self.id,
            "db_name": self.name,
            "tables": [table._to_dict() for table in self.tables],
            "charset": self.charset,
            "collate": self.collate,
        })

    @classmethod
    def from_json(cls, data: bytes | str) -> DBInfo:
        """Parse a database schema; raise ValueError if it is malformed."""
        try:
            raw = _loads(data)
            return cls(
                id=int(raw.get("id", 0)),
                name=str(raw.get("db_name", "")),
                tables=[TableInfo._from_dict(item) for item in raw.get("tables") or []],
                charset=str(raw.get("charset", "")),
                collate=str(raw.get("collate", "")),
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"invalid database info: {exc}") from exc


@dataclass
class BackupFile:
    """One SST file written by a backup."""

    name: str = ""
    sha256: bytes = b""
    start_key: bytes = b""
    end_key: bytes = b""
    start_version: int = 0
    end_version: int = 0
    crc64xor: int = 0
    total_kvs: int = 0
    total_bytes: int = 0

    def _to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "sha256": _b64(self.sha256),
            "start_key": _b64(self.start_key),
            "end_key": _b64(self.end_key),
            "start_version": self.start_version,
            "end_version": self.end_version,
            "crc64xor": self.crc64xor,
            "total_kvs": self.total_kvs,
            "total_bytes": self.total_bytes,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> BackupFile:
        return cls(
            name=str(data.get("name", "")),
            sha256=_unb64(data.get("sha256", "")),
            start_key=_unb64(data.get("start_key", "")),
            end_key=_unb64(data.get("end_key", "")),
            start_version=int(data.get("start_version", 0)),
            end_version=int(data.get("end_version", 0)),
            crc64xor=int(data.get("crc64xor", 0)),
            total_kvs=int(data.get("total_kvs", 0)),
            total_bytes=int(data.get("total_bytes", 0)),
        )


@dataclass
class BackupSchema:
    """A backed-up table: serialised database and table schemas plus checksums."""

    db: bytes = b""
    table: bytes = b""
    crc64xor: int = 0
    total_kvs: int = 0
    total_bytes: int = 0

    def _to_dict(self) -> dict[str, Any]:
        return {
            "db": _b64(self.db),
            "table": _b64(self.table),
            "crc64xor": self.crc64xor,
            "total_kvs": self.total_kvs,
            "total_bytes": self.total_bytes,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> BackupSchema:
        return cls(
            db=_unb64(data.get("db", "")),
            table=_unb64(data.get("table", "")),
            crc64xor=int(data.get("crc64xor", 0)),
            total_kvs=int(data.get("total_kvs", 0)),
            total_bytes=int(data.get("total_bytes", 0)),
        )


@dataclass
class BackupMeta:
    """Everything a backup records about itself."""

    files: list[BackupFile] = field(default_factory=list)
    schemas: list[BackupSchema] = field(default_factory=list)
    start_version: int = 0
    end_version: int = 0

    def to_bytes(self) -> bytes:
        """Serialise the meta for the meta file."""
        return _dumps({
            "start_version": self.start_version,
            "end_version": self.end_version,
            "files": [item._to_dict() for item in self.files],
            "schemas": [item._to_dict() for item in self.schemas],
        })

    @classmethod
    def from_bytes(cls, data: bytes) -> BackupMeta:
        """Parse a meta file; raise ValueError if it is malformed."""
        try:
            raw = _loads(data)
            return cls(
                files=[BackupFile._from_dict(item) for item in raw.get("files") or []],
                schemas=[BackupSchema._from_dict(item) for item in raw.get("schemas") or []],
                start_version=int(raw.get("start_version", 0)),
                end_version=int(raw.get("end_version", 0)),
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"invalid backup meta: {exc}") from exc


@dataclass
class Table:
    """The schema, checksums and files of one backed-up table."""

    db: DBInfo
    schema: TableInfo
    crc64xor: int = 0
    total_kvs: int = 0
    total_bytes: int = 0
    files: list[BackupFile] = field(default_factory=list)


@dataclass
class Database:
    """The schema and tables of one backed-up database."""

    schema: DBInfo
    tables: list[Table] = field(default_factory=list)

    def get_table(self, name: str) -> Table | None:
        """Return the table with the given name, or None."""
        return next((table for table in self.tables if table.schema.name == name), None)


def _file_in_table(file: BackupFile, table_id: int, partitions: set[int]) -> bool:
    if not file.start_key.startswith(TABLE_PREFIX) and not file.end_key.startswith(TABLE_PREFIX):
        return False
    start_table_id = decode_table_id(file.start_key)
    return start_table_id in partitions or start_table_id == table_id


def load_backup_tables(meta: BackupMeta) -> dict[str, Database]:
    """Group the schemas and files of a backup by database name."""
    databases: dict[str, Database] = {}
    for schema in meta.schemas:
        db_info = DBInfo.from_json(schema.db)
        db = databases.get(db_info.name)
        if db is None:
            db = Database(schema=db_info)
            databases[db_info.name] = db
        table_info = TableInfo.from_json(schema.table)
        partitions = set(table_info.partition or ())
        files = [f for f in meta.files if _file_in_table(f, table_info.id, partitions)]
        db.tables.append(Table(
            db=db_info,
            schema=table_info,
            crc64xor=schema.crc64xor,
            total_kvs=schema.total_kvs,
            total_bytes=schema.total_bytes,
            files=files,
        ))
    return databases