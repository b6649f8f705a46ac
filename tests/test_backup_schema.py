import threading

import pytest

from kvbackup.backup_schema import Schemas, calculate_checksum
from kvbackup.checksum import ChecksumResponse
from kvbackup.schema import BackupSchema, DBInfo, IndexInfo, TableInfo

MAX_UINT64 = (1 << 64) - 1


class OnesClient:
    def checksum(self, request):
        return [ChecksumResponse(1, 1, 1)]


class FailingClient:
    def checksum(self, request):
        raise ConnectionError("store unreachable")


class Counter:
    def __init__(self):
        self.lock = threading.Lock()
        self.count = 0

    def __call__(self):
        with self.lock:
            self.count += 1


def make_schema(table_id, name, indices=()):
    db = DBInfo(id=1, name="test")
    table = TableInfo(id=table_id, name=name, indices=list(indices))
    return BackupSchema(db=db.to_json(), table=table.to_json())


def test_empty_schemas():
    schemas = Schemas()
    assert len(schemas) == 0
    schemas.start(OnesClient(), MAX_UINT64, 1, Counter())
    assert schemas.finish_table_checksum() == []


def test_one_table_checksum():
    schemas = Schemas()
    schemas.push_pending(make_schema(1, "t1"), "test", "t1")
    assert len(schemas) == 1
    counter = Counter()
    schemas.start(OnesClient(), MAX_UINT64, 1, counter)
    result = schemas.finish_table_checksum()
    assert len(result) == 1
    assert result[0].crc64xor != 0
    assert result[0].total_kvs != 0
    assert result[0].total_bytes != 0
    assert counter.count == 1


def test_two_tables_checksum():
    schemas = Schemas()
    schemas.push_pending(make_schema(1, "t1"), "test", "t1")
    schemas.push_pending(make_schema(2, "t2"), "test", "t2")
    counter = Counter()
    schemas.start(OnesClient(), MAX_UINT64, 2, counter)
    result = schemas.finish_table_checksum()
    assert len(result) == 2
    assert all(s.crc64xor and s.total_kvs and s.total_bytes for s in result)
    assert counter.count == 2


def test_checksum_matches_calculate():
    table = TableInfo(id=3, name="t3", indices=[IndexInfo(id=1, name="i")])
    schema = BackupSchema(db=DBInfo(name="test").to_json(), table=table.to_json())
    schemas = Schemas()
    schemas.push_pending(schema, "test", "t3")
    schemas.start(OnesClient(), 5, 1)
    (result,) = schemas.finish_table_checksum()
    expected = calculate_checksum(table, OnesClient(), 5)
    assert (result.crc64xor, result.total_kvs, result.total_bytes) == (
        expected.checksum, expected.total_kvs, expected.total_bytes,
    )
    assert result.table == schema.table


def test_skip_checksum_keeps_schema():
    schema = make_schema(1, "t1")
    schemas = Schemas()
    schemas.push_pending(schema, "test", "t1")
    schemas.set_skip_checksum(True)
    counter = Counter()
    schemas.start(FailingClient(), MAX_UINT64, 1, counter)
    assert schemas.finish_table_checksum() == [schema]
    assert counter.count == 1


def test_same_name_replaces_pending():
    schemas = Schemas()
    schemas.push_pending(make_schema(1, "t1"), "test", "t1")
    schemas.push_pending(make_schema(2, "t1"), "test", "t1")
    assert len(schemas) == 1


def test_checksum_error_is_raised():
    schemas = Schemas()
    schemas.push_pending(make_schema(1, "t1"), "test", "t1")
    schemas.start(FailingClient(), MAX_UINT64, 1)
    with pytest.raises(ConnectionError, match="store unreachable"):
        schemas.finish_table_checksum()


def test_calculate_checksum_of_indexed_table():
    table = TableInfo(id=2, indices=[IndexInfo(id=1, name="i2")])
    resp = calculate_checksum(table, OnesClient(), MAX_UINT64)
    assert resp == ChecksumResponse(0, 2, 2)