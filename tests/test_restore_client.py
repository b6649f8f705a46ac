import threading
from types import SimpleNamespace

import pytest

from kvbackup.checksum import ChecksumResponse
from kvbackup.conn import StoreState
from kvbackup.restore_client import IMPORT_MODE, NORMAL_MODE, RestoreClient
from kvbackup.restore_util import RewriteRule, RewriteRules, encode_rewrite_rules
from kvbackup.schema import (
    BackupFile,
    BackupMeta,
    BackupSchema,
    DBInfo,
    Table,
    TableInfo,
    encode_row_key,
    encode_table_prefix,
)
from kvbackup.tso import decode_ts


class FakeDB:
    def __init__(self):
        self.next_id = 100
        self.created = {}
        self.created_dbs = []
        self.closed = False

    def create_database(self, schema):
        self.created_dbs.append(schema.name)

    def create_table(self, table):
        self.created[(table.db.name, table.schema.name)] = TableInfo(
            id=self.next_id, name=table.schema.name
        )
        self.next_id += 1

    def close(self):
        self.closed = True


class FakeInfoSchema:
    def __init__(self, db):
        self.db = db

    def table_by_name(self, db_name, table_name):
        return self.db.created[(db_name, table_name)]


class FakePD:
    def __init__(self, stores=()):
        self.stores = list(stores)

    def get_ts(self):
        return 1000, 5

    def get_all_stores(self):
        return self.stores


class FakeImporter:
    def __init__(self, fail=None):
        self.fail = fail
        self.imported = []
        self.rules = []
        self.lock = threading.Lock()

    def import_file(self, file, rules):
        if file.name == self.fail:
            raise RuntimeError("import failed")
        with self.lock:
            self.imported.append(file.name)
            self.rules.append(rules)


def make_client(**kwargs):
    db = FakeDB()
    return RestoreClient(FakePD(kwargs.pop("stores", ())), db, **kwargs), db


def test_create_tables():
    client, db = make_client()
    db_info = DBInfo(id=1, name="test")
    tables = [
        Table(db=db_info, schema=TableInfo(id=i, name=f"test{i}")) for i in range(3, -1, -1)
    ]
    rules, new_tables = client.create_tables(FakeInfoSchema(db), tables)
    assert [t.schema.id for t in tables] == [0, 1, 2, 3]
    assert [t.name for t in new_tables] == ["test0", "test1", "test2", "test3"]
    expected = {
        RewriteRule(encode_table_prefix(old), encode_table_prefix(new))
        for old, new in [(0, 100), (1, 101), (2, 102), (3, 103), (4, 104)]
    }
    assert set(rules.table) == expected
    assert len(rules.table) == 5
    assert len(rules.data) == 4


def test_switch_mode_online_does_nothing():
    client, _ = make_client()
    assert client.is_online is False
    client.enable_online()
    assert client.is_online is True
    client.switch_to_import_mode_if_offline()
    client.switch_to_normal_mode_if_offline()
    assert client.is_online is True


def test_switch_mode_offline_skips_tombstones():
    calls = []

    class Conn:
        def __init__(self, address):
            self.address = address

        def switch_mode(self, mode):
            calls.append((self.address, mode))

        def close(self):
            calls.append((self.address, "closed"))

    stores = [
        SimpleNamespace(id=1, address="a:1", state=StoreState.UP),
        SimpleNamespace(id=2, address="b:1", state=StoreState.TOMBSTONE),
    ]
    client, _ = make_client(stores=stores, dial=Conn)
    assert client.is_online is False
    client.switch_to_import_mode_if_offline()
    client.switch_to_normal_mode_if_offline()
    assert client.is_online is False
    assert calls == [
        ("a:1", IMPORT_MODE), ("a:1", "closed"), ("a:1", NORMAL_MODE), ("a:1", "closed"),
    ]


def test_switch_mode_offline_without_dialer_raises():
    client, _ = make_client()
    with pytest.raises(RuntimeError):
        client.switch_to_import_mode_if_offline()


def test_get_ts():
    client, _ = make_client()
    ts = decode_ts(client.get_ts())
    assert (ts.physical, ts.logical) == (1000, 5)


def _meta():
    db_info = DBInfo(id=1, name="test")
    t1 = TableInfo(id=10, name="t1")
    t2 = TableInfo(id=20, name="t2")
    files = [
        BackupFile(name="10_write.sst", start_key=encode_row_key(10, b"a"),
                   end_key=encode_row_key(10, b"z")),
        BackupFile(name="20_write.sst", start_key=encode_row_key(20, b"a"),
                   end_key=encode_row_key(20, b"z")),
    ]
    schemas = [
        BackupSchema(db=db_info.to_json(), table=t1.to_json()),
        BackupSchema(db=db_info.to_json(), table=t2.to_json()),
    ]
    return BackupMeta(files=files, schemas=schemas, end_version=777)


def test_init_backup_meta_loads_databases():
    client, _ = make_client()
    client.init_backup_meta(_meta(), FakeImporter())
    assert [db.schema.name for db in client.get_databases()] == ["test"]
    db = client.get_database("test")
    assert sorted(t.schema.name for t in db.tables) == ["t1", "t2"]
    assert [f.name for f in db.get_table("t1").files] == ["10_write.sst"]
    assert client.get_database("missing") is None


def test_restore_all_imports_every_file():
    client, _ = make_client()
    importer = FakeImporter()
    client.init_backup_meta(_meta(), importer)
    client.set_concurrency(4)
    rules = RewriteRules(table=[RewriteRule(b"t1", b"t2")], data=[RewriteRule(b"t1_r", b"t2_r")])
    updates = []
    client.restore_all(rules, lambda: updates.append(1))
    assert sorted(importer.imported) == ["10_write.sst", "20_write.sst"]
    assert len(updates) == 2
    assert all(r == encode_rewrite_rules(rules) for r in importer.rules)


def test_restore_table_raises_import_error():
    client, _ = make_client()
    importer = FakeImporter(fail="10_write.sst")
    client.init_backup_meta(_meta(), importer)
    table = client.get_database("test").get_table("t1")
    with pytest.raises(RuntimeError, match="import failed"):
        client.restore_table(table, RewriteRules())


def test_restore_after_close_skips_work():
    client, db = make_client()
    importer = FakeImporter()
    client.init_backup_meta(_meta(), importer)
    client.close()
    assert db.closed is True
    client.restore_all(RewriteRules())
    assert importer.imported == []


def test_reset_ts_retries_next_address():
    calls = []

    def reset(addr, ts):
        calls.append((addr, ts))
        if len(calls) == 1:
            raise OSError("unavailable")

    client, _ = make_client(reset_fn=reset)
    client.init_backup_meta(_meta(), FakeImporter())
    assert [db.schema.name for db in client.get_databases()] == ["test"]
    client.reset_ts(["pd1:2379", "pd2:2379"])
    assert calls == [("pd1:2379", 777), ("pd2:2379", 777)]


def test_reset_ts_without_meta_raises():
    client, _ = make_client()
    with pytest.raises(RuntimeError):
        client.reset_ts(["pd1:2379"])


class FakeKV:
    def checksum(self, request):
        return [ChecksumResponse(checksum=1, total_kvs=1, total_bytes=1)]


def test_validate_checksum_passes():
    client, _ = make_client()
    table = Table(db=DBInfo(id=1, name="test"), schema=TableInfo(id=1, name="t1"),
                  crc64xor=1, total_kvs=1, total_bytes=1)
    updates = []
    client.validate_checksum(FakeKV(), [table], [TableInfo(id=2, name="t1")],
                             lambda: updates.append(1))
    assert updates == [1]


def test_validate_checksum_mismatch():
    client, _ = make_client()
    table = Table(db=DBInfo(id=1, name="test"), schema=TableInfo(id=1, name="t1"),
                  crc64xor=7, total_kvs=1, total_bytes=1)
    with pytest.raises(ValueError, match="failed to validate checksum"):
        client.validate_checksum(FakeKV(), [table], [TableInfo(id=2, name="t1")])