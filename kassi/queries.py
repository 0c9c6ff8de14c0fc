"""Queries over the payment database."""

from __future__ import annotations

import dataclasses
import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence, TypeVar

from kassi.errors import QueryError, RecordNotFound
from kassi.models import (
    Asset,
    DepositAddress,
    Job,
    LedgerEntry,
    MerchantConfig,
    Network,
    NetworkAddress,
    NewDepositAddress,
    NewJob,
    NewLedgerEntry,
    NewMerchant,
    NewMerchantConfig,
    NewNetworkAddress,
    NewPaymentIntent,
    NewQuote,
    NewSigner,
    PaymentIntent,
    PriceCache,
    Quote,
    Signer,
    WebhookDelivery,
    from_row,
)

T = TypeVar("T")

Cursor = "tuple[datetime, str] | None"


@contextmanager
def _translate() -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise QueryError(exc) from exc


def _columns(model: type, alias: str, prefix: str = "") -> str:
    return ", ".join(
        f"{alias}.{f.name} AS {prefix}{f.name}" for f in dataclasses.fields(model)
    )


def _build(model: type[T], row: sqlite3.Row, prefix: str = "") -> T:
    return from_row(
        model, {f.name: row[prefix + f.name] for f in dataclasses.fields(model)}
    )


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _insert(conn: sqlite3.Connection, table: str, values: Any) -> sqlite3.Cursor:
    """Insert a dataclass; fields left as None take the column default."""
    columns: list[str] = []
    params: list[Any] = []
    for f in dataclasses.fields(values):
        value = getattr(values, f.name)
        if f.metadata.get("json"):
            value = json.dumps(value)
        elif value is None:
            continue
        columns.append(f.name)
        params.append(value)
    sql = (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({_placeholders(params)})"
    )
    with _translate():
        return conn.execute(sql, params)


def _fetch_one(
    conn: sqlite3.Connection, model: type[T], sql: str, params: Sequence[Any]
) -> T | None:
    with _translate():
        row = conn.execute(sql, params).fetchone()
    return None if row is None else _build(model, row)


def _fetch_all(
    conn: sqlite3.Connection, model: type[T], sql: str, params: Sequence[Any]
) -> list[T]:
    with _translate():
        rows = conn.execute(sql, params).fetchall()
    return [_build(model, row) for row in rows]


def _by_id(conn: sqlite3.Connection, model: type[T], table: str, key: Any) -> T:
    row = _fetch_one(
        conn, model, f"SELECT {_columns(model, 't')} FROM {table} t WHERE t.id = ?", [key]
    )
    if row is None:
        raise RecordNotFound()
    return row


def get_merchant_config(conn: sqlite3.Connection, merchant_id: str) -> MerchantConfig:
    """Fetch a merchant's config; raises RecordNotFound when there is none."""
    config = _fetch_one(
        conn,
        MerchantConfig,
        f"SELECT {_columns(MerchantConfig, 'c')} FROM merchant_configs c "
        "WHERE c.merchant_id = ? LIMIT 1",
        [merchant_id],
    )
    if config is None:
        raise RecordNotFound()
    return config


def get_active_networks(conn: sqlite3.Connection) -> list[Network]:
    """Fetch all active networks."""
    return _fetch_all(
        conn,
        Network,
        f"SELECT {_columns(Network, 'n')} FROM networks n WHERE n.is_active = 1",
        [],
    )


def insert_deposit_address(
    conn: sqlite3.Connection, values: NewDepositAddress
) -> DepositAddress:
    """Insert a deposit address and return the created row."""
    _insert(conn, "deposit_addresses", values)
    return _by_id(conn, DepositAddress, "deposit_addresses", values.id)


def insert_network_address(conn: sqlite3.Connection, values: NewNetworkAddress) -> None:
    """Insert a network address."""
    _insert(conn, "network_addresses", values)


def max_derivation_index(
    conn: sqlite3.Connection, merchant_id: str, network_id: str
) -> int | None:
    """Highest derivation index for a merchant and network, or None if none exist."""
    with _translate():
        row = conn.execute(
            "SELECT MAX(na.derivation_index) FROM network_addresses na "
            "JOIN deposit_addresses da ON da.id = na.deposit_address_id "
            "WHERE da.merchant_id = ? AND na.network_id = ?",
            [merchant_id, network_id],
        ).fetchone()
    return None if row[0] is None else int(row[0])


def load_network_addresses(
    conn: sqlite3.Connection, deposit_address_ids: Sequence[str]
) -> list[tuple[NetworkAddress, Network]]:
    """Network addresses with their networks for the given deposit addresses."""
    ids = list(deposit_address_ids)
    if not ids:
        return []
    sql = (
        f"SELECT {_columns(NetworkAddress, 'na', 'na_')}, "
        f"{_columns(Network, 'n', 'n_')} FROM network_addresses na "
        "JOIN networks n ON n.id = na.network_id "
        f"WHERE na.deposit_address_id IN ({_placeholders(ids)})"
    )
    with _translate():
        rows = conn.execute(sql, ids).fetchall()
    return [(_build(NetworkAddress, r, "na_"), _build(Network, r, "n_")) for r in rows]


def get_deposit_address(
    conn: sqlite3.Connection, id: str, merchant_id: str
) -> DepositAddress | None:
    """Fetch a deposit address by ID, scoped to a merchant."""
    return _fetch_one(
        conn,
        DepositAddress,
        f"SELECT {_columns(DepositAddress, 'd')} FROM deposit_addresses d "
        "WHERE d.id = ? AND d.merchant_id = ? LIMIT 1",
        [id, merchant_id],
    )


def first_network_address_string(
    conn: sqlite3.Connection, deposit_address_id: str
) -> str | None:
    """The first on-chain address string of a deposit address."""
    with _translate():
        row = conn.execute(
            "SELECT address FROM network_addresses WHERE deposit_address_id = ? LIMIT 1",
            [deposit_address_id],
        ).fetchone()
    return None if row is None else row[0]


def load_assets_by_ids(conn: sqlite3.Connection, ids: Sequence[str]) -> list[Asset]:
    """Batch-load assets by IDs."""
    ids = list(ids)
    if not ids:
        return []
    return _fetch_all(
        conn,
        Asset,
        f"SELECT {_columns(Asset, 'a')} FROM assets a "
        f"WHERE a.id IN ({_placeholders(ids)})",
        ids,
    )


def load_networks_by_ids(conn: sqlite3.Connection, ids: Sequence[str]) -> list[Network]:
    """Batch-load networks by IDs."""
    ids = list(ids)
    if not ids:
        return []
    return _fetch_all(
        conn,
        Network,
        f"SELECT {_columns(Network, 'n')} FROM networks n "
        f"WHERE n.id IN ({_placeholders(ids)})",
        ids,
    )


@dataclass(frozen=True)
class CreateMerchantParams:
    """What is needed to create a merchant with its config and first signer."""

    merchant_id: str
    config_id: str
    signer_id: str
    webhook_secret: str
    signer_address: str
    signer_type: str
    encrypted_seed: str | None = None


def create_merchant_with_config(
    conn: sqlite3.Connection, params: CreateMerchantParams
) -> None:
    """Create a merchant, its config and signer atomically."""
    with _translate():
        conn.execute("SAVEPOINT create_merchant")
    try:
        _insert(conn, "merchants", NewMerchant(id=params.merchant_id))
        _insert(
            conn,
            "merchant_configs",
            NewMerchantConfig(
                id=params.config_id,
                merchant_id=params.merchant_id,
                webhook_secret=params.webhook_secret,
                encrypted_seed=params.encrypted_seed,
            ),
        )
        _insert(
            conn,
            "signers",
            NewSigner(
                id=params.signer_id,
                merchant_id=params.merchant_id,
                address=params.signer_address,
                signer_type=params.signer_type,
            ),
        )
    except BaseException:
        conn.execute("ROLLBACK TO create_merchant")
        conn.execute("RELEASE create_merchant")
        raise
    with _translate():
        conn.execute("RELEASE create_merchant")


def merchant_exists(conn: sqlite3.Connection, merchant_id: str) -> bool:
    """Whether a merchant with this ID exists."""
    with _translate():
        (count,) = conn.execute(
            "SELECT COUNT(*) FROM merchants WHERE id = ?", [merchant_id]
        ).fetchone()
    return count > 0


def find_signer_by_address(conn: sqlite3.Connection, address: str) -> Signer | None:
    """Find a signer by wallet address."""
    return _fetch_one(
        conn,
        Signer,
        f"SELECT {_columns(Signer, 's')} FROM signers s WHERE s.address = ? LIMIT 1",
        [address],
    )


def consume_nonce(conn: sqlite3.Connection, nonce: str) -> bool:
    """Delete an unexpired nonce; True if one was consumed."""
    with _translate():
        cursor = conn.execute(
            "DELETE FROM nonces WHERE nonce = ? AND expires_at > ?",
            [nonce, datetime.now(timezone.utc)],
        )
    return cursor.rowcount > 0


def find_config_by_api_key_hash(
    conn: sqlite3.Connection, hash: str
) -> MerchantConfig | None:
    """Look up a merchant config by API key hash."""
    return _fetch_one(
        conn,
        MerchantConfig,
        f"SELECT {_columns(MerchantConfig, 'c')} FROM merchant_configs c "
        "WHERE c.api_key_hash = ? LIMIT 1",
        [hash],
    )


def insert_payment_intent(
    conn: sqlite3.Connection, values: NewPaymentIntent
) -> PaymentIntent:
    """Insert a payment intent and return the created row."""
    _insert(conn, "payment_intents", values)
    return _by_id(conn, PaymentIntent, "payment_intents", values.id)


def insert_quote(conn: sqlite3.Connection, values: NewQuote) -> Quote:
    """Insert a quote and return the created row."""
    _insert(conn, "quotes", values)
    return _by_id(conn, Quote, "quotes", values.id)


def get_payment_intent(
    conn: sqlite3.Connection, id: str, merchant_id: str
) -> PaymentIntent | None:
    """Fetch a payment intent by ID, scoped to a merchant."""
    return _fetch_one(
        conn,
        PaymentIntent,
        f"SELECT {_columns(PaymentIntent, 'p')} FROM payment_intents p "
        "WHERE p.id = ? AND p.merchant_id = ? LIMIT 1",
        [id, merchant_id],
    )


def load_quotes_by_payment_intent_ids(
    conn: sqlite3.Connection, payment_intent_ids: Sequence[str]
) -> list[Quote]:
    """Load the quotes of the given payment intents."""
    ids = list(payment_intent_ids)
    if not ids:
        return []
    return _fetch_all(
        conn,
        Quote,
        f"SELECT {_columns(Quote, 'q')} FROM quotes q "
        f"WHERE q.payment_intent_id IN ({_placeholders(ids)})",
        ids,
    )


def get_asset_by_id(conn: sqlite3.Connection, id: str) -> Asset | None:
    """Fetch an active asset by its internal ID."""
    return _fetch_one(
        conn,
        Asset,
        f"SELECT {_columns(Asset, 'a')} FROM assets a "
        "WHERE a.id = ? AND a.is_active = 1 LIMIT 1",
        [id],
    )


def get_latest_price(
    conn: sqlite3.Connection, asset_id: str, fiat_currency: str
) -> PriceCache | None:
    """The most recently fetched price for an asset in a fiat currency."""
    return _fetch_one(
        conn,
        PriceCache,
        f"SELECT {_columns(PriceCache, 'p')} FROM price_cache p "
        "WHERE p.asset_id = ? AND p.fiat_currency = ? "
        "ORDER BY p.fetched_at DESC LIMIT 1",
        [asset_id, fiat_currency],
    )


def upsert_price_cache(
    conn: sqlite3.Connection,
    id: str,
    asset_id: str,
    fiat_currency: str,
    price: str,
    source: str,
    fetched_at: datetime,
) -> None:
    """Record a fetched price."""
    with _translate():
        conn.execute(
            "INSERT INTO price_cache "
            "(id, asset_id, fiat_currency, price, source, fetched_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [id, asset_id, fiat_currency, price, source, fetched_at],
        )


def insert_ledger_entry(conn: sqlite3.Connection, values: NewLedgerEntry) -> LedgerEntry:
    """Insert a ledger entry and return the created row."""
    _insert(conn, "ledger_entries", values)
    return _by_id(conn, LedgerEntry, "ledger_entries", values.id)


def insert_job(conn: sqlite3.Connection, values: NewJob) -> Job:
    """Insert a job and return the created row."""
    cursor = _insert(conn, "jobs", values)
    return _by_id(conn, Job, "jobs", cursor.lastrowid)


def get_deposit_address_unscoped(
    conn: sqlite3.Connection, id: str
) -> DepositAddress | None:
    """Fetch a deposit address by ID without merchant scoping."""
    return _fetch_one(
        conn,
        DepositAddress,
        f"SELECT {_columns(DepositAddress, 'd')} FROM deposit_addresses d "
        "WHERE d.id = ? LIMIT 1",
        [id],
    )


def get_active_assets(conn: sqlite3.Connection) -> list[tuple[Asset, Network]]:
    """All active assets with their networks."""
    sql = (
        f"SELECT {_columns(Asset, 'a', 'a_')}, {_columns(Network, 'n', 'n_')} "
        "FROM assets a JOIN networks n ON n.id = a.network_id WHERE a.is_active = 1"
    )
    with _translate():
        rows = conn.execute(sql).fetchall()
    return [(_build(Asset, r, "a_"), _build(Network, r, "n_")) for r in rows]


def get_asset_by_caip19(conn: sqlite3.Connection, caip19: str) -> Asset | None:
    """Fetch an active asset by its CAIP-19 identifier."""
    return _fetch_one(
        conn,
        Asset,
        f"SELECT {_columns(Asset, 'a')} FROM assets a "
        "WHERE a.caip19 = ? AND a.is_active = 1 LIMIT 1",
        [caip19],
    )


def _cursor_clause(alias: str, cursor: tuple[datetime, str] | None) -> tuple[str, list]:
    if cursor is None:
        return "", []
    cursor_time, cursor_id = cursor
    return (
        f" AND ({alias}.created_at < ? OR "
        f"({alias}.created_at = ? AND {alias}.id < ?))",
        [cursor_time, cursor_time, cursor_id],
    )


def list_webhook_deliveries(
    conn: sqlite3.Connection,
    merchant_id: str,
    limit: int,
    cursor: tuple[datetime, str] | None = None,
) -> list[WebhookDelivery]:
    """A merchant's webhook deliveries, newest first, after an optional cursor."""
    clause, params = _cursor_clause("w", cursor)
    return _fetch_all(
        conn,
        WebhookDelivery,
        f"SELECT {_columns(WebhookDelivery, 'w')} FROM webhook_deliveries w "
        f"WHERE w.merchant_id = ?{clause} "
        "ORDER BY w.created_at DESC, w.id DESC LIMIT ?",
        [merchant_id, *params, limit],
    )


def get_webhook_delivery(
    conn: sqlite3.Connection, id: str, merchant_id: str
) -> WebhookDelivery | None:
    """Fetch a webhook delivery by ID, scoped to a merchant."""
    return _fetch_one(
        conn,
        WebhookDelivery,
        f"SELECT {_columns(WebhookDelivery, 'w')} FROM webhook_deliveries w "
        "WHERE w.id = ? AND w.merchant_id = ? LIMIT 1",
        [id, merchant_id],
    )


def find_network_address(
    conn: sqlite3.Connection, address: str, network_id: str
) -> NetworkAddress | None:
    """Find a network address by on-chain address and network."""
    return _fetch_one(
        conn,
        NetworkAddress,
        f"SELECT {_columns(NetworkAddress, 'na')} FROM network_addresses na "
        "WHERE na.address = ? AND na.network_id = ? LIMIT 1",
        [address, network_id],
    )


def all_network_addresses(conn: sqlite3.Connection) -> list[tuple[str, str]]:
    """Every (network_id, address) pair."""
    with _translate():
        rows = conn.execute("SELECT network_id, address FROM network_addresses").fetchall()
    return [(row[0], row[1]) for row in rows]


def job_counts_by_queue_and_status(conn: sqlite3.Connection) -> list[tuple[str, str, int]]:
    """Job counts grouped by queue and status."""
    with _translate():
        rows = conn.execute(
            "SELECT queue, status, COUNT(id) FROM jobs GROUP BY queue, status"
        ).fetchall()
    return [(row[0], row[1], int(row[2])) for row in rows]


def list_refund_ledger_entries(
    conn: sqlite3.Connection,
    merchant_id: str,
    limit: int,
    cursor: tuple[datetime, str] | None = None,
) -> list[tuple[LedgerEntry, DepositAddress]]:
    """A merchant's refund entries with their deposit addresses, newest first."""
    clause, params = _cursor_clause("le", cursor)
    sql = (
        f"SELECT {_columns(LedgerEntry, 'le', 'le_')}, "
        f"{_columns(DepositAddress, 'd', 'd_')} FROM ledger_entries le "
        "JOIN deposit_addresses d ON d.id = le.deposit_address_id "
        f"WHERE d.merchant_id = ? AND le.entry_type = 'refund'{clause} "
        "ORDER BY le.created_at DESC, le.id DESC LIMIT ?"
    )
    with _translate():
        rows = conn.execute(sql, [merchant_id, *params, limit]).fetchall()
    return [(_build(LedgerEntry, r, "le_"), _build(DepositAddress, r, "d_")) for r in rows]