"""Table definitions for the payment database."""

from __future__ import annotations

import sqlite3

_NOW = "(strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"
_PENDING = "'pending'"


def _column(name, sql_type, *, null=False, default=None, ref=None):
    parts = [name, sql_type]
    if not null:
        parts.append("NOT NULL")
    if default is not None:
        parts.append(f"DEFAULT {default}")
    if ref:
        parts.append(f"REFERENCES {ref} (id)")
    return " ".join(parts)


def _text(name, **options):
    return _column(name, "TEXT", **options)


def _int(name, **options):
    return _column(name, "INTEGER", **options)


def _stamp(name, *, null=False, now=False):
    return _column(name, "TEXT", null=null, default=_NOW if now else None)


def _ref(name, table, *, null=False):
    return _text(name, null=null, ref=table)


_ID = "id TEXT PRIMARY KEY"
_SERIAL = "id INTEGER PRIMARY KEY AUTOINCREMENT"
_CREATED = _stamp("created_at", now=True)
_UPDATED = _stamp("updated_at", now=True)
_MERCHANT = _ref("merchant_id", "merchants")
_NETWORK = _ref("network_id", "networks")
_ASSET = _ref("asset_id", "assets")
_DEPOSIT = _ref("deposit_address_id", "deposit_addresses")

_TABLES: dict[str, tuple[str, ...]] = {
    "merchants": (_ID, _text("name", null=True), _CREATED, _UPDATED),
    "networks": (
        _ID,
        _text("display_name"),
        _int("block_time_ms"),
        _int("confirmations"),
        _int("is_active", default=1),
        _CREATED,
    ),
    "merchant_configs": (
        _ID,
        _MERCHANT,
        _text("api_key_hash", null=True),
        _text("encrypted_seed", null=True),
        _text("webhook_secret"),
        _text("webhook_url", null=True),
        _CREATED,
        _UPDATED,
    ),
    "settlement_destinations": (
        _ID, _MERCHANT, _NETWORK, _text("address"), _CREATED, _UPDATED,
    ),
    "signers": (
        _ID,
        _MERCHANT,
        _text("address"),
        _text("signer_type"),
        _stamp("linked_at", now=True),
    ),
    "assets": (
        _ID,
        _NETWORK,
        _text("caip19"),
        _text("contract_address", null=True),
        _text("symbol"),
        _text("name"),
        _int("decimals"),
        _text("coingecko_id", null=True),
        _int("is_active", default=1),
        _CREATED,
    ),
    "deposit_addresses": (
        _ID, _MERCHANT, _text("label", null=True), _text("address_type"), _CREATED,
    ),
    "network_addresses": (
        _ID, _DEPOSIT, _NETWORK, _text("address"), _int("derivation_index"),
    ),
    "payment_intents": (
        _ID,
        _DEPOSIT,
        _MERCHANT,
        _text("fiat_amount"),
        _text("fiat_currency"),
        _text("status", default=_PENDING),
        _stamp("confirmed_at", null=True),
        _stamp("expires_at"),
        _CREATED,
        _UPDATED,
    ),
    "quotes": (
        _ID,
        _ref("payment_intent_id", "payment_intents"),
        _ASSET,
        _text("exchange_rate"),
        _text("crypto_amount"),
        _stamp("expires_at"),
        _CREATED,
    ),
    "ledger_entries": (
        _ID,
        _DEPOSIT,
        _ref("payment_intent_id", "payment_intents", null=True),
        _ASSET,
        _NETWORK,
        _text("entry_type"),
        _text("status"),
        _text("amount"),
        _text("fee_amount", null=True),
        _text("sender", null=True),
        _text("destination", null=True),
        _text("onchain_ref"),
        _text("reason", null=True),
        _CREATED,
    ),
    "webhook_deliveries": (
        _ID,
        _MERCHANT,
        _text("event_type"),
        _text("reference_id"),
        _text("url"),
        _text("payload"),
        _text("status", default=_PENDING),
        _int("attempts", default=0),
        _stamp("last_attempt_at", null=True),
        _int("response_code", null=True),
        _CREATED,
        _UPDATED,
    ),
    "price_cache": (
        _ID,
        _ASSET,
        _text("fiat_currency"),
        _text("price"),
        _text("source"),
        _stamp("fetched_at"),
    ),
    "jobs": (
        _SERIAL,
        _text("queue"),
        _text("payload"),
        _text("status", default=_PENDING),
        _int("attempts", default=0),
        _int("max_attempts"),
        _stamp("scheduled_at", now=True),
        _stamp("started_at", null=True),
        _stamp("completed_at", null=True),
        _stamp("failed_at", null=True),
        _text("last_error", null=True),
        _CREATED,
    ),
    "nonces": (_SERIAL, _text("nonce"), _stamp("expires_at"), _CREATED),
}

_INDEXES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("jobs_poll_idx", "jobs", ("queue", "status", "scheduled_at")),
    ("nonces_nonce_idx", "nonces", ("nonce",)),
    ("signers_address_idx", "signers", ("address",)),
    ("network_addresses_deposit_idx", "network_addresses", ("deposit_address_id",)),
    ("price_cache_lookup_idx", "price_cache", ("asset_id", "fiat_currency", "fetched_at")),
)


def table_names() -> tuple[str, ...]:
    """Names of all tables, in an order where referenced tables come first."""
    return tuple(_TABLES)


def create_schema(conn: sqlite3.Connection) -> None:
    """Create every table and index that does not exist yet."""
    for table, columns in _TABLES.items():
        conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({', '.join(columns)})")
    for name, table, columns in _INDEXES:
        conn.execute(
            f"CREATE INDEX IF NOT EXISTS {name} ON {table} ({', '.join(columns)})"
        )