from unittest import mock

import pytest

from kvbackup.restore_util import (
    KeyRange,
    Region,
    RewriteRule,
    RewriteRules,
    encode_key_prefix,
    encode_rewrite_rules,
    find_region_rewrite_rule,
    get_ranges,
    get_rewrite_rules,
    get_sst_meta_from_file,
    rewrite_raw_key_with_new_prefix,
    split_ranges,
    truncate_ts,
    with_retry,
)
from kvbackup.schema import (
    RECORD_PREFIX_SEP,
    BackupFile,
    IndexInfo,
    TableInfo,
    encode_bytes,
    encode_table_index_prefix,
    encode_table_prefix,
)


def test_get_sst_meta_from_file():
    file = BackupFile(name="file_default.sst", start_key=b"t1a", end_key=b"t1ccc")
    rule = RewriteRule(old_key_prefix=b"t1", new_key_prefix=b"t2")
    region = Region(start_key=b"t2abc", end_key=b"t3a")
    meta = get_sst_meta_from_file(b"", file, region, rule)
    assert meta.range.start_key == b"t2abc"
    assert meta.range.end_key == b"t2\xff"
    assert meta.cf_name == "default"


def test_get_sst_meta_clamps_to_region_end():
    file = BackupFile(name="x_write.sst")
    rule = RewriteRule(old_key_prefix=b"t1", new_key_prefix=b"t2")
    region = Region(start_key=b"t1", end_key=b"t2b")
    meta = get_sst_meta_from_file(b"id", file, region, rule)
    assert meta.range == KeyRange(b"t2", b"t2b")
    assert meta.cf_name == "write"


def test_get_rewrite_rules_matches_indices_by_name():
    old = TableInfo(id=5, name="t", indices=[IndexInfo(id=1, name="i1"), IndexInfo(id=2, name="gone")])
    new = TableInfo(id=9, name="t", indices=[IndexInfo(id=3, name="i1")])
    rules = get_rewrite_rules(new, old)
    assert rules.table == [RewriteRule(encode_table_prefix(5), encode_table_prefix(9))]
    assert rules.data == [
        RewriteRule(encode_table_prefix(5) + RECORD_PREFIX_SEP,
                    encode_table_prefix(9) + RECORD_PREFIX_SEP),
        RewriteRule(encode_table_index_prefix(5, 1), encode_table_index_prefix(9, 3)),
    ]


@pytest.mark.parametrize("key", [b"", b"t1", b"12345678", b"123456789ab", b"t" * 16])
def test_encode_key_prefix_is_prefix_of_encoded_key(key):
    prefix = encode_key_prefix(key)
    assert encode_bytes(key).startswith(prefix)
    assert encode_bytes(key + b"zz").startswith(prefix)


def test_rewrite_raw_key_with_new_prefix():
    rules = encode_rewrite_rules(RewriteRules(data=[RewriteRule(b"t1", b"t2")]))
    assert rewrite_raw_key_with_new_prefix(b"t1a", rules) == encode_bytes(b"t2a")
    assert rewrite_raw_key_with_new_prefix(b"t3a", rules) is None
    assert rewrite_raw_key_with_new_prefix(b"", rules) is None


def test_rewrite_falls_back_to_table_rules():
    rules = encode_rewrite_rules(RewriteRules(
        table=[RewriteRule(b"t1", b"t2")], data=[RewriteRule(b"x1", b"x2")]))
    assert rewrite_raw_key_with_new_prefix(b"t1_i", rules) == encode_bytes(b"t2_i")


def test_get_ranges_only_write_files_once():
    files = [
        BackupFile(name="1_write.sst", start_key=b"a", end_key=b"b"),
        BackupFile(name="1_default.sst", start_key=b"a", end_key=b"b"),
        BackupFile(name="1_write.sst", start_key=b"a", end_key=b"b"),
        BackupFile(name="2_write.sst", start_key=b"b", end_key=b"c"),
    ]
    assert get_ranges(files) == [KeyRange(b"a", b"b"), KeyRange(b"b", b"c")]


def test_find_region_rewrite_rule():
    rule = RewriteRule(b"t1", b"t2")
    rules = RewriteRules(data=[rule])
    assert find_region_rewrite_rule(Region(start_key=b"t2abc"), rules) is rule
    assert find_region_rewrite_rule(Region(start_key=b"t3"), rules) is None


def test_truncate_ts():
    assert truncate_ts(b"key" + b"\x00" * 8) == b"key"
    with pytest.raises(ValueError):
        truncate_ts(b"short")


def test_with_retry_backs_off_and_raises_last_error():
    calls = []

    def fail():
        calls.append(1)
        raise OSError(len(calls))

    with mock.patch("kvbackup.restore_util.time.sleep") as sleep:
        with pytest.raises(OSError) as info:
            with_retry(fail, lambda e: True, 4, 1.0, 3.0)
    assert len(calls) == 4
    assert info.value.args == (4,)
    assert [c.args[0] for c in sleep.call_args_list] == [2.0, 3.0, 3.0]


def test_with_retry_stops_when_told():
    calls = []

    def fail():
        calls.append(1)
        raise KeyError("stop")

    with pytest.raises(KeyError):
        with_retry(fail, lambda e: False, 5, 0.0, 0.0)
    assert len(calls) == 1


def test_with_retry_returns_after_success():
    outcomes = [ValueError("x"), "ok"]

    def flaky():
        item = outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    with mock.patch("kvbackup.restore_util.time.sleep"):
        assert with_retry(flaky, lambda e: True, 3, 0.01, 0.1) == "ok"
    assert outcomes == []


def test_split_ranges_reports_progress():
    class Splitter:
        def split(self, ranges, rules, on_split):
            self.args = (ranges, rules)
            for rg in ranges:
                on_split(rg)

    splitter = Splitter()
    ranges = [KeyRange(b"a", b"b"), KeyRange(b"b", b"c")]
    rules = RewriteRules()
    updates = []
    split_ranges(splitter, ranges, rules, lambda: updates.append(1))
    assert len(updates) == 2
    assert splitter.args == (ranges, rules)