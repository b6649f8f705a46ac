from types import SimpleNamespace

import pytest

from kvbackup.conn import Store
from kvbackup.restore_import import (
    EPOCH_NOT_MATCH,
    REWRITE_RULE_NOT_FOUND,
    FileImporter,
    ImporterClient,
    ImportError_,
    RegionInfo,
)
from kvbackup.restore_util import (
    KeyRange,
    Peer,
    Region,
    RewriteRule,
    RewriteRules,
    encode_rewrite_rules,
    rewrite_raw_key_with_new_prefix,
)
from kvbackup.schema import (
    RECORD_PREFIX_SEP,
    BackupFile,
    encode_int,
    encode_row_key,
    encode_table_prefix,
)

TS_SUFFIX = b"\x00" * 8

RAW_RULES = RewriteRules(
    table=[RewriteRule(encode_table_prefix(1), encode_table_prefix(2))],
    data=[RewriteRule(
        encode_table_prefix(1) + RECORD_PREFIX_SEP,
        encode_table_prefix(2) + RECORD_PREFIX_SEP,
    )],
)
RULES = encode_rewrite_rules(RAW_RULES)
FILE = BackupFile(
    name="1_write.sst",
    start_key=encode_row_key(1, encode_int(0)),
    end_key=encode_row_key(1, encode_int(100)),
)


class FakeMetaClient:
    def __init__(self, regions):
        self.regions = regions
        self.scans = []
        self.stores = []

    def scan_regions(self, start, end, limit):
        self.scans.append((start, end, limit))
        return list(self.regions)

    def get_store(self, store_id):
        self.stores.append(store_id)
        return Store(id=store_id, address=f"store-{store_id}")


class FakeImporter:
    def __init__(self, is_empty=False, ingest_errors=(), download_failures=0):
        self.is_empty = is_empty
        self.ingest_errors = list(ingest_errors)
        self.download_failures = download_failures
        self.downloads = []
        self.ingests = []

    def download_sst(self, store_id, request):
        if self.download_failures:
            self.download_failures -= 1
            raise RuntimeError("connection reset")
        self.downloads.append((store_id, request))
        start = request.sst.range.start_key
        return SimpleNamespace(
            is_empty=self.is_empty,
            range=KeyRange(start + TS_SUFFIX, start + b"z" + TS_SUFFIX),
        )

    def ingest_sst(self, store_id, request):
        self.ingests.append((store_id, request))
        error = self.ingest_errors.pop(0) if self.ingest_errors else None
        return SimpleNamespace(error=error)


def region_info(region_id=5, start_key=None):
    start = RULES.data[0].new_key_prefix if start_key is None else start_key
    region = Region(id=region_id, start_key=start, end_key=b"", peers=[Peer(id=1, store_id=1)])
    return RegionInfo(region=region)


def make_importer(meta, importer, attempts=3):
    return FileImporter(
        meta, importer, "backend",
        import_attempts=attempts, download_attempts=attempts,
        wait_interval=0.0, max_wait_interval=0.0,
    )


def test_import_file_downloads_and_ingests():
    meta = FakeMetaClient([region_info()])
    importer = FakeImporter()
    make_importer(meta, importer).import_file(FILE, RULES)

    start, end, limit = meta.scans[0]
    assert start == rewrite_raw_key_with_new_prefix(FILE.start_key, RULES)
    assert end == rewrite_raw_key_with_new_prefix(FILE.end_key, RULES)
    assert limit == 0

    _, download = importer.downloads[0]
    assert download.rewrite_rule == RULES.data[0]
    assert download.name == "1_write.sst"
    assert download.storage_backend == "backend"

    store_id, ingest = importer.ingests[0]
    assert store_id == 1
    assert ingest.context.region_id == 5
    assert ingest.sst.region_id == 5
    assert ingest.sst.cf_name == "write"
    assert ingest.sst.range.start_key == download.sst.range.start_key
    assert ingest.sst.range.end_key == download.sst.range.start_key + b"z"


def test_import_file_skips_empty_range():
    meta = FakeMetaClient([region_info()])
    importer = FakeImporter(is_empty=True)
    make_importer(meta, importer).import_file(FILE, RULES)
    assert len(importer.downloads) == 1
    assert importer.ingests == []


def test_import_file_skips_region_without_rule():
    meta = FakeMetaClient([region_info(start_key=b"unrelated")])
    importer = FakeImporter()
    make_importer(meta, importer).import_file(FILE, RULES)
    assert importer.downloads == []
    assert importer.ingests == []


def test_import_file_retries_failed_download():
    meta = FakeMetaClient([region_info()])
    importer = FakeImporter(download_failures=1)
    make_importer(meta, importer).import_file(FILE, RULES)
    assert len(importer.downloads) == 1
    assert len(importer.ingests) == 1


def test_import_file_without_rule_for_key():
    meta = FakeMetaClient([region_info()])
    other = BackupFile(name="x_write.sst", start_key=encode_row_key(9, encode_int(0)),
                       end_key=encode_row_key(9, encode_int(1)))
    with pytest.raises(ImportError_, match=REWRITE_RULE_NOT_FOUND):
        make_importer(meta, FakeImporter()).import_file(other, RULES)
    assert meta.scans == []


def test_import_file_epoch_not_match_retries_then_fails():
    error = SimpleNamespace(epoch_not_match=True, not_leader=None)
    meta = FakeMetaClient([region_info()])
    importer = FakeImporter(ingest_errors=[error] * 3)
    with pytest.raises(ImportError_, match=EPOCH_NOT_MATCH):
        make_importer(meta, importer, attempts=3).import_file(FILE, RULES)
    assert len(importer.ingests) == 3


def test_import_file_recovers_after_ingest_error():
    error = SimpleNamespace(epoch_not_match=None, not_leader=True)
    meta = FakeMetaClient([region_info()])
    importer = FakeImporter(ingest_errors=[error])
    make_importer(meta, importer).import_file(FILE, RULES)
    assert len(importer.ingests) == 2
    assert len(meta.scans) == 2


class FakeStoreClient:
    def __init__(self, address):
        self.address = address

    def download(self, request):
        return ("download", self.address, request)

    def ingest(self, request):
        return ("ingest", self.address, request)


def test_importer_client_caches_store_clients():
    meta = FakeMetaClient([])
    dialed = []

    def dial(address):
        dialed.append(address)
        return FakeStoreClient(address)

    client = ImporterClient(meta, dial)
    assert client.download_sst(3, "req") == ("download", "store-3", "req")
    assert client.ingest_sst(3, "req2") == ("ingest", "store-3", "req2")
    assert client.ingest_sst(4, "req3") == ("ingest", "store-4", "req3")
    assert dialed == ["store-3", "store-4"]
    assert meta.stores == [3, 4]