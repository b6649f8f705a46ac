# kvbackup

Backup and restore building blocks for distributed key-value clusters.
The package pushes backup requests down to every live store, tracks which
key ranges have been saved, retries the ranges still missing, and records
per-table checksums in a backup meta file. On restore it recreates the
schemas, rewrites table and index key prefixes so that data lands under
the IDs of the new tables, imports the files region by region and checks
the result against the recorded checksums.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Command line

The `kvbackup` command has two subcommands. Global options go before the
subcommand:

```
kvbackup version
kvbackup --storage local:///path/to/backup meta checksum
```

- `version` prints the release version, git hash, git branch, build time
  and whether race detection was enabled.
- `meta checksum` reads the `backupmeta` file from the given storage,
  computes the SHA-256 of every backed-up file and compares it with the
  digest recorded at backup time. On success it prints
  `backup data checksum succeed!`; on the first changed file it reports
  the file with both digests and exits with status 1.

Global options:

| Option | Meaning |
|--------|---------|
| `-s`, `--storage` | storage URL (see below) |
| `--s3.region`, `--s3.endpoint` | options for `s3://` URLs |
| `-L`, `--log-level` | `debug`, `info`, `warn`, `error`, ... (default `info`) |
| `--log-file` | write logs to this file instead of standard error |
| `--status-addr` | `host:port` of a small HTTP status endpoint answering `ok` |
| `-u`, `--pd`, `--ca`, `--cert`, `--key` | accepted; not used by the current subcommands |

SIGTERM ends the command with status 0; SIGHUP, SIGQUIT and Ctrl-C end it
with status 1.

## Storage URLs

| URL                               | Backend                                     |
|-----------------------------------|---------------------------------------------|
| `local:///path` or `file:///path` | files in a local directory (created if missing) |
| `noop://`                         | discards writes, reads return nothing       |
| `s3://bucket/prefix`              | S3 description; needs `s3.region` or `s3.endpoint` |

In code:

```python
from kvbackup.storage import parse_backend, create, format_backend_url

backend = parse_backend("local:///tmp/backup", None)
store = create(backend)
store.write("example", b"data")
print(store.read("example"))          # b'data'
print(format_backend_url(backend))    # local:///tmp/backup
```

`format_backend_url` leaves out the S3 endpoint and region.

## Library overview

- `kvbackup.storage` – `parse_backend`, `format_backend_url`, `create`,
  `LocalStorage`, `NoopStorage`, and argparse helpers
  (`define_flags`, `parse_backend_from_args`).
- `kvbackup.tso` – `Timestamp`, `encode_ts`, `decode_ts`, and `reset_ts`,
  which asks PD over HTTP to move its timestamp forward.
- `kvbackup.schema` – schema and meta records (`TableInfo`, `DBInfo`,
  `BackupFile`, `BackupSchema`, `BackupMeta`), `load_backup_tables`, and
  the memcomparable key encoding (`encode_int`, `encode_bytes`,
  `encode_row_key`, `encode_table_index_prefix`, `decode_table_id`, ...).
- `kvbackup.range_tree` – `Range` and `RangeTree`, which records backed-up
  ranges and reports the gaps still to be backed up.
- `kvbackup.safe_point` – `get_gc_safe_point`, `check_gc_safepoint`.
- `kvbackup.conn` – `Mgr`, `new_mgr` and `pd_get` for PD's HTTP API.
- `kvbackup.push` – `PushDown` and `send_backup`.
- `kvbackup.fine_grained` – retry of incomplete ranges on region leaders.
- `kvbackup.backup_schema` – `Schemas`, which computes table checksums on
  a worker pool.
- `kvbackup.backup_client` – `BackupClient`, `build_table_ranges`,
  `build_backup_range_and_schema`, `parse_duration`.
- `kvbackup.checksum` – `ExecutorBuilder`, `Executor` and checksum requests.
- `kvbackup.restore_db` – `DB`, which issues `CREATE DATABASE` / `CREATE TABLE`.
- `kvbackup.restore_util` – rewrite rules, SST metadata and `with_retry`.
- `kvbackup.restore_import` – `FileImporter` and `ImporterClient`.
- `kvbackup.restore_client` – `RestoreClient` for table creation, data
  import, mode switching and checksum validation.
- `kvbackup.worker`, `kvbackup.progress`, `kvbackup.version` – worker
  pool, progress reporting and build information.

## What the package does not do

- It has no `backup` or `restore` command. Backups and restores are run
  from Python through `BackupClient` and `RestoreClient`.
- It does not speak the cluster's RPC protocols. The PD client, store
  backup and import clients, lock resolver, region splitter, checksum
  client, SQL session and schema lookups are objects the caller supplies;
  only PD's HTTP endpoints (cluster version, region count, timestamp
  reset) are reached directly.
- S3 URLs are parsed and formatted, but `create` cannot open S3 storage.
- TLS options are accepted on the command line but not applied.