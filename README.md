# kassi

`kassi` is the back-office core of a crypto point-of-sale service. It keeps
merchants, their signers and deposit addresses, payment intents, quotes,
ledger entries, webhook deliveries and cached prices in a SQLite database,
runs background work through a durable, retrying job queue, and builds the
JSON envelopes for successful API responses.

It needs nothing beyond the Python standard library, and Python 3.10 or later.

## Install

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

| Module | Purpose |
| --- | --- |
| `kassi.schema` | `create_schema(conn)` creates every table and index that does not exist yet; `table_names()` lists the tables, referenced tables first. |
| `kassi.models` | Frozen dataclasses for each row (`Network`, `Merchant`, `MerchantConfig`, `Signer`, `Asset`, `DepositAddress`, `NetworkAddress`, `PaymentIntent`, `Quote`, `LedgerEntry`, `WebhookDelivery`, `PriceCache`, `Job`, `Nonce`, ...) and the `New...` values used to insert them. `from_row(model, row)` builds a model from a row, parsing timestamps, booleans and JSON payloads. |
| `kassi.database` | `Database`, a bounded pool of SQLite connections with `connection()`, `transaction()` and `close()`; `create_pool(database_url)` opens one with room for ten connections and creates the schema. |
| `kassi.queries` | The service's queries, each taking a `sqlite3.Connection`. |
| `kassi.jobs` | The job queue: `enqueue`, `enqueue_scheduled`, `poll`, `complete`, `fail`, `dead_letter`, `recover_stale`. |
| `kassi.worker` | `Worker`, `WorkerConfig`, the `JobHandler` interface and `retry_delay`. |
| `kassi.config` | `Config.from_env` reads the service settings from environment variables. |
| `kassi.response` | `ApiSuccess`, `ApiList` and `ListMeta`, the JSON envelopes for successful responses. |
| `kassi.errors` | `DbError` (`PoolError`, `QueryError`, `RecordNotFound`) and `JobError` (`JobDatabaseError`, `JobPoolError`, `SerializationError`, `HandlerError`). |

## The database

```python
from kassi.database import create_pool
from kassi import queries

db = create_pool("sqlite:///kassi.db")
with db.connection() as conn:
    networks = queries.get_active_networks(conn)
```

`Database` accepts these URLs:

- `""`, `":memory:"`, `"sqlite://"` or `"sqlite:///:memory:"`: an in-memory
  database shared by all connections of that one `Database`;
- `"sqlite:///path/to/file.db"` or a plain file path;
- any other scheme raises `PoolError`.

`connection()` lends a connection for the length of a `with` block and rolls
back anything left uncommitted when it is returned. `transaction()` does the
same inside `BEGIN`/`COMMIT`, rolling back if the block raises. Waiting longer
than 30 seconds for a free connection, or using a closed pool, raises
`PoolError`. A `Database` is also a context manager that closes itself.

Timestamps are stored as UTC text with millisecond precision.

### Queries

Among them:

- `create_merchant_with_config(conn, CreateMerchantParams(...))` inserts a
  merchant, its config and its first signer, all or nothing;
- `consume_nonce(conn, nonce)` deletes an unexpired nonce and tells whether
  one was consumed;
- `max_derivation_index(conn, merchant_id, network_id)` gives the highest
  derivation index used, or `None`;
- `get_latest_price` and `upsert_price_cache` read and record cached prices;
- `list_webhook_deliveries` and `list_refund_ledger_entries` page newest
  first, taking an optional `(created_at, id)` cursor;
- `job_counts_by_queue_and_status(conn)` gives `(queue, status, count)` rows.

Lookups that may find nothing return `None`; `get_merchant_config` raises
`RecordNotFound` instead. SQL failures raise `QueryError`.

## The job queue

```python
from kassi import jobs

job = jobs.enqueue(db, "refunds", {"amount": "25000000"}, 3)
claimed = jobs.poll(db, "refunds")
if claimed is not None:
    jobs.complete(db, claimed.id)
```

A job belongs to a named queue and carries a JSON payload; a payload that
cannot be encoded as JSON raises `SerializationError`. A job moves through
these states:

- `pending`: waiting. `poll` claims only a pending job whose scheduled time
  has come, the earliest first, under a write lock, marks it `running` and
  raises its attempt count by one. It returns `None` when nothing is due.
- `running`: claimed. A running job is never handed out a second time.
- `completed`: after `complete`.
- `pending` again after `fail(pool, job_id, error, retry_at)`: the error is
  recorded and the job is rescheduled for `retry_at`.
- `dead`: after `dead_letter(pool, job_id, error)`.

`recover_stale(pool, queue)` puts jobs of one queue left `running` back to
`pending` and returns how many it reset; other queues are left alone.
Storage failures surface as `JobPoolError` or `JobDatabaseError`.

## Workers

```python
import asyncio
from datetime import timedelta

from kassi.worker import JobHandler, Worker, WorkerConfig


class PrintHandler(JobHandler):
    async def handle(self, job):
        print(job.payload)


worker = Worker(db, PrintHandler(), WorkerConfig("refunds", poll_interval=timedelta(seconds=1)))
asyncio.run(worker.run())
```

`run` is a coroutine. It first recovers stale jobs of its queue, then polls
until `cancel()` is called. When the queue is empty it waits for the poll
interval, or until cancelled, whichever comes first.

For each claimed job the handler's `handle` is awaited:

- if it returns, the job is completed;
- if it raises and the job has reached its `max_attempts`, the job is moved to
  `dead` with the exception's text as its error;
- otherwise the job is rescheduled after `retry_delay(base_backoff, attempts)`:
  the whole seconds of the base backoff doubled for every attempt after the
  first (5 s, 10 s, 20 s, ... with the default base).

`WorkerConfig` defaults to a poll interval of 5 seconds and a base backoff of
5 seconds.

## Configuration

`Config.from_env(environ=None)` reads from `os.environ`, or from the mapping
given; variable names are matched without regard to case.

| Variable | Required | Default |
| --- | --- | --- |
| `DATABASE_URL` | yes | |
| `SESSION_JWT_SECRET` | yes | |
| `API_KEY_PREFIX` | yes | |
| `INFISICAL_CLIENT_ID` | yes | |
| `INFISICAL_CLIENT_SECRET` | yes | |
| `INFISICAL_PROJECT_ID` | yes | |
| `INTERNAL_BASIC_AUTH_TOKEN` | yes | |
| `ADMIN_BASIC_AUTH_TOKEN` | yes | |
| `PORT` | no | `3000` (0 to 65535) |
| `QUOTE_LOCK_DURATION_SECS` | no | `1800` (30 minutes) |
| `PRICE_CACHE_STALE_SECS` | no | `300` (5 minutes) |

A missing required variable, or a number that is invalid or out of range,
raises `ValueError`.

## Response envelopes

`ApiSuccess(data).to_response()` gives `(HTTPStatus.OK, {"data": ...})`, and
`ApiSuccess.created(data)` the same with `HTTPStatus.CREATED`.
`ApiList(items, ListMeta(next_page=...)).to_response()` gives
`(HTTPStatus.OK, {"data": [...], "meta": {"next_page": ..., "previous_page": ...}})`.
Dataclasses, mappings, lists, enums and datetimes (as UTC ISO 8601 text ending
in `Z`) are turned into plain JSON values.

## What this package does not do

It has no HTTP server, no routes, no authentication and no command to start a
service: it provides the storage, queries, job queue, worker, configuration
and success envelopes such a service is built on. It does not turn errors
into HTTP error responses, and it does not fetch prices, derive addresses or
sign anything.