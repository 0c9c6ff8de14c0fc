import json
from datetime import datetime, timedelta, timezone

import pytest

from kassi import queries
from kassi.database import create_pool
from kassi.errors import QueryError, RecordNotFound
from kassi.models import (
    NewDepositAddress,
    NewJob,
    NewLedgerEntry,
    NewNetworkAddress,
    NewPaymentIntent,
    NewQuote,
)


@pytest.fixture
def conn():
    db = create_pool(":memory:")
    with db.connection() as connection:
        yield connection
    db.close()


def make_merchant(conn, merchant_id, address=None):
    queries.create_merchant_with_config(
        conn,
        queries.CreateMerchantParams(
            merchant_id=merchant_id,
            config_id=f"cfg_{merchant_id}",
            signer_id=f"sig_{merchant_id}",
            webhook_secret="secret",
            signer_address=address or f"addr_{merchant_id}",
            signer_type="evm",
        ),
    )


def seed_network(conn, network_id, name, active=True):
    conn.execute(
        "INSERT INTO networks (id, display_name, block_time_ms, confirmations, is_active)"
        " VALUES (?, ?, 12000, 12, ?)",
        [network_id, name, int(active)],
    )


def seed_asset(conn, asset_id, network_id, symbol, active=True):
    conn.execute(
        "INSERT INTO assets (id, network_id, caip19, symbol, name, decimals, is_active)"
        " VALUES (?, ?, ?, ?, ?, 18, ?)",
        [asset_id, network_id, f"{network_id}/slip44:60", symbol, symbol, int(active)],
    )


def make_deposit(conn, dep_id, merchant_id, label=None):
    return queries.insert_deposit_address(
        conn,
        NewDepositAddress(
            id=dep_id, merchant_id=merchant_id, address_type="reusable", label=label
        ),
    )


def add_network_address(conn, na_id, dep_id, network_id, address, index):
    queries.insert_network_address(
        conn,
        NewNetworkAddress(
            id=na_id,
            deposit_address_id=dep_id,
            network_id=network_id,
            address=address,
            derivation_index=index,
        ),
    )


def test_create_merchant_with_config_and_lookups(conn):
    make_merchant(conn, "mer_a", address="0xabc")
    assert queries.merchant_exists(conn, "mer_a") is True
    assert queries.merchant_exists(conn, "mer_b") is False
    config = queries.get_merchant_config(conn, "mer_a")
    assert config.id == "cfg_mer_a"
    assert config.webhook_secret == "secret"
    assert config.encrypted_seed is None
    signer = queries.find_signer_by_address(conn, "0xabc")
    assert signer.merchant_id == "mer_a"
    assert signer.signer_type == "evm"
    assert queries.find_signer_by_address(conn, "0xnone") is None


def test_get_merchant_config_missing_raises(conn):
    with pytest.raises(RecordNotFound):
        queries.get_merchant_config(conn, "mer_missing")


def test_create_merchant_rolls_back_on_failure(conn):
    make_merchant(conn, "mer_a")
    with pytest.raises(QueryError):
        queries.create_merchant_with_config(
            conn,
            queries.CreateMerchantParams(
                merchant_id="mer_b",
                config_id="cfg_mer_a",
                signer_id="sig_b",
                webhook_secret="secret",
                signer_address="0xb",
                signer_type="evm",
            ),
        )
    assert queries.merchant_exists(conn, "mer_b") is False
    assert not conn.in_transaction


def test_find_config_by_api_key_hash(conn):
    make_merchant(conn, "mer_a")
    conn.execute(
        "UPDATE merchant_configs SET api_key_hash = ? WHERE merchant_id = ?",
        ["hash1", "mer_a"],
    )
    assert queries.find_config_by_api_key_hash(conn, "hash1").merchant_id == "mer_a"
    assert queries.find_config_by_api_key_hash(conn, "other") is None


def test_consume_nonce_once_and_not_expired(conn):
    now = datetime.now(timezone.utc)
    conn.execute(
        "INSERT INTO nonces (nonce, expires_at) VALUES (?, ?)",
        ["fresh", now + timedelta(minutes=5)],
    )
    conn.execute(
        "INSERT INTO nonces (nonce, expires_at) VALUES (?, ?)",
        ["old", now - timedelta(minutes=5)],
    )
    assert queries.consume_nonce(conn, "fresh") is True
    assert queries.consume_nonce(conn, "fresh") is False
    assert queries.consume_nonce(conn, "old") is False


def test_active_networks_and_batch_loads(conn):
    seed_network(conn, "eip155:1", "Ethereum")
    seed_network(conn, "eip155:137", "Polygon")
    seed_network(conn, "eip155:999", "Inactive Chain", active=False)
    ids = {n.id for n in queries.get_active_networks(conn)}
    assert ids == {"eip155:1", "eip155:137"}
    loaded = queries.load_networks_by_ids(conn, ["eip155:999", "eip155:1"])
    assert {n.id for n in loaded} == {"eip155:999", "eip155:1"}
    assert queries.load_networks_by_ids(conn, []) == []


def test_insert_deposit_address_returns_row(conn):
    make_merchant(conn, "mer_a")
    created = make_deposit(conn, "dep_1", "mer_a", label="storefront-checkout")
    assert created.id == "dep_1"
    assert created.label == "storefront-checkout"
    assert created.address_type == "reusable"
    assert created.created_at.tzinfo is not None
    assert queries.get_deposit_address(conn, "dep_1", "mer_a") == created
    assert queries.get_deposit_address(conn, "dep_1", "mer_b") is None
    assert queries.get_deposit_address_unscoped(conn, "dep_1") == created
    assert queries.get_deposit_address_unscoped(conn, "nonexistent") is None


def test_max_derivation_index_scoped(conn):
    make_merchant(conn, "mer_a")
    make_merchant(conn, "mer_b")
    seed_network(conn, "eip155:1", "Ethereum")
    assert queries.max_derivation_index(conn, "mer_a", "eip155:1") is None
    make_deposit(conn, "dep_a1", "mer_a")
    make_deposit(conn, "dep_a2", "mer_a")
    make_deposit(conn, "dep_b1", "mer_b")
    add_network_address(conn, "na1", "dep_a1", "eip155:1", "0x1", 0)
    add_network_address(conn, "na2", "dep_a2", "eip155:1", "0x2", 1)
    add_network_address(conn, "na3", "dep_b1", "eip155:1", "0x3", 7)
    assert queries.max_derivation_index(conn, "mer_a", "eip155:1") == 1
    assert queries.max_derivation_index(conn, "mer_b", "eip155:1") == 7


def test_network_address_lookups(conn):
    make_merchant(conn, "mer_a")
    seed_network(conn, "eip155:1", "Ethereum")
    seed_network(conn, "eip155:137", "Polygon")
    make_deposit(conn, "dep_1", "mer_a")
    make_deposit(conn, "dep_2", "mer_a")
    add_network_address(conn, "na1", "dep_1", "eip155:1", "0x1", 0)
    add_network_address(conn, "na2", "dep_1", "eip155:137", "0x1", 0)
    add_network_address(conn, "na3", "dep_2", "eip155:1", "0x2", 1)

    pairs = queries.load_network_addresses(conn, ["dep_1"])
    assert len(pairs) == 2
    for na, network in pairs:
        assert na.deposit_address_id == "dep_1"
        assert network.id == na.network_id
    assert {n.display_name for _, n in pairs} == {"Ethereum", "Polygon"}
    assert queries.load_network_addresses(conn, []) == []

    assert queries.first_network_address_string(conn, "dep_2") == "0x2"
    assert queries.first_network_address_string(conn, "dep_none") is None

    found = queries.find_network_address(conn, "0x1", "eip155:137")
    assert found.id == "na2"
    assert queries.find_network_address(conn, "0x2", "eip155:137") is None

    assert sorted(queries.all_network_addresses(conn)) == [
        ("eip155:1", "0x1"),
        ("eip155:1", "0x2"),
        ("eip155:137", "0x1"),
    ]


def test_asset_queries(conn):
    seed_network(conn, "eip155:1", "Ethereum")
    seed_asset(conn, "asset-eth", "eip155:1", "ETH")
    seed_asset(conn, "asset-old", "eip155:1", "OLD", active=False)
    assert queries.get_asset_by_id(conn, "asset-eth").symbol == "ETH"
    assert queries.get_asset_by_id(conn, "asset-old") is None
    assert queries.get_asset_by_caip19(conn, "eip155:1/slip44:60").is_active is True
    active = queries.get_active_assets(conn)
    assert [(a.id, n.id) for a, n in active] == [("asset-eth", "eip155:1")]
    loaded = queries.load_assets_by_ids(conn, ["asset-old"])
    assert [a.id for a in loaded] == ["asset-old"]
    assert queries.load_assets_by_ids(conn, []) == []


def test_latest_price_and_duplicate_insert(conn):
    seed_network(conn, "eip155:8453", "Base")
    seed_asset(conn, "ast_usdc_base", "eip155:8453", "USDC")
    now = datetime.now(timezone.utc)
    queries.upsert_price_cache(
        conn, "pc_1", "ast_usdc_base", "USD", "0.999", "defillama", now - timedelta(seconds=600)
    )
    queries.upsert_price_cache(conn, "pc_2", "ast_usdc_base", "USD", "1.001", "defillama", now)
    latest = queries.get_latest_price(conn, "ast_usdc_base", "USD")
    assert latest.price == "1.001"
    assert latest.source == "defillama"
    assert queries.get_latest_price(conn, "ast_usdc_base", "EUR") is None
    with pytest.raises(QueryError):
        queries.upsert_price_cache(conn, "pc_1", "ast_usdc_base", "USD", "1", "x", now)


def test_payment_intent_and_quotes(conn):
    make_merchant(conn, "mer_a")
    seed_network(conn, "eip155:8453", "Base")
    seed_asset(conn, "ast_usdc_base", "eip155:8453", "USDC")
    make_deposit(conn, "dep_1", "mer_a")
    expires = datetime.now(timezone.utc) + timedelta(minutes=30)
    pi = queries.insert_payment_intent(
        conn,
        NewPaymentIntent(
            id="pi_1",
            deposit_address_id="dep_1",
            merchant_id="mer_a",
            fiat_amount="25.00",
            fiat_currency="USD",
            expires_at=expires,
        ),
    )
    assert pi.status == "pending"
    assert pi.confirmed_at is None
    assert abs(pi.expires_at - expires) < timedelta(milliseconds=1)
    assert queries.get_payment_intent(conn, "pi_1", "mer_a") == pi
    assert queries.get_payment_intent(conn, "pi_1", "mer_other") is None

    quote = queries.insert_quote(
        conn,
        NewQuote(
            id="q_1",
            payment_intent_id="pi_1",
            asset_id="ast_usdc_base",
            exchange_rate="1.0",
            crypto_amount="25000000",
            expires_at=expires,
        ),
    )
    assert quote.crypto_amount == "25000000"
    assert queries.load_quotes_by_payment_intent_ids(conn, ["pi_1"]) == [quote]
    assert queries.load_quotes_by_payment_intent_ids(conn, []) == []


def test_insert_job_defaults(conn):
    job = queries.insert_job(
        conn, NewJob(queue="test_queue", payload={"key": "value"}, max_attempts=3)
    )
    assert job.queue == "test_queue"
    assert job.status == "pending"
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.payload == {"key": "value"}
    assert job.scheduled_at is not None and job.started_at is None

    future = datetime.now(timezone.utc) + timedelta(hours=1)
    scheduled = queries.insert_job(
        conn, NewJob(queue="q", payload=None, max_attempts=10, scheduled_at=future)
    )
    assert scheduled.payload is None
    assert scheduled.scheduled_at > datetime.now(timezone.utc)
    assert scheduled.id > job.id


def test_job_counts_by_queue_and_status(conn):
    for _ in range(2):
        queries.insert_job(conn, NewJob(queue="refunds", payload={}, max_attempts=3))
    queries.insert_job(conn, NewJob(queue="webhooks", payload={}, max_attempts=3))
    conn.execute("UPDATE jobs SET status = 'dead' WHERE queue = 'webhooks'")
    counts = sorted(queries.job_counts_by_queue_and_status(conn))
    assert counts == [("refunds", "pending", 2), ("webhooks", "dead", 1)]


def seed_delivery(conn, delivery_id, merchant_id, created_at):
    conn.execute(
        "INSERT INTO webhook_deliveries"
        " (id, merchant_id, event_type, reference_id, url, payload, created_at)"
        " VALUES (?, ?, 'payment.confirmed', 'pi_1', 'https://example.com/hook', ?, ?)",
        [delivery_id, merchant_id, json.dumps({"id": delivery_id}), created_at],
    )


def test_webhook_deliveries_paginate_newest_first(conn):
    make_merchant(conn, "mer_a")
    make_merchant(conn, "mer_b")
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    seed_delivery(conn, "wh_1", "mer_a", base)
    seed_delivery(conn, "wh_2", "mer_a", base + timedelta(seconds=1))
    seed_delivery(conn, "wh_3", "mer_a", base + timedelta(seconds=1))
    seed_delivery(conn, "wh_other", "mer_b", base + timedelta(seconds=5))

    page1 = queries.list_webhook_deliveries(conn, "mer_a", 2, None)
    assert [d.id for d in page1] == ["wh_3", "wh_2"]
    last = page1[-1]
    page2 = queries.list_webhook_deliveries(conn, "mer_a", 2, (last.created_at, last.id))
    assert [d.id for d in page2] == ["wh_1"]
    assert page2[0].payload == {"id": "wh_1"}

    assert queries.get_webhook_delivery(conn, "wh_1", "mer_a").url == "https://example.com/hook"
    assert queries.get_webhook_delivery(conn, "wh_other", "mer_a") is None


def test_refund_ledger_entries_scoped_and_filtered(conn):
    make_merchant(conn, "mer_a")
    make_merchant(conn, "mer_b")
    seed_network(conn, "eip155:1", "Ethereum")
    seed_asset(conn, "asset-eth", "eip155:1", "ETH")
    make_deposit(conn, "dep_a", "mer_a")
    make_deposit(conn, "dep_b", "mer_b")

    def entry(entry_id, dep_id, entry_type, amount):
        return queries.insert_ledger_entry(
            conn,
            NewLedgerEntry(
                id=entry_id,
                deposit_address_id=dep_id,
                asset_id="asset-eth",
                network_id="eip155:1",
                entry_type=entry_type,
                status="pending",
                amount=amount,
                onchain_ref=f"ref_{entry_id}",
                destination="0xrefund1",
                reason="partial refund",
            ),
        )

    created = entry("le_1", "dep_a", "refund", "10000000")
    assert created.payment_intent_id is None
    assert created.reason == "partial refund"
    assert created.fee_amount is None
    entry("le_2", "dep_a", "deposit", "25000000")
    entry("le_3", "dep_b", "refund", "5")
    entry("le_4", "dep_a", "refund", "20")

    rows = queries.list_refund_ledger_entries(conn, "mer_a", 10, None)
    assert {le.id for le, _ in rows} == {"le_1", "le_4"}
    assert all(dep.id == "dep_a" and le.entry_type == "refund" for le, dep in rows)

    first = queries.list_refund_ledger_entries(conn, "mer_a", 1, None)
    le, _ = first[0]
    rest = queries.list_refund_ledger_entries(conn, "mer_a", 10, (le.created_at, le.id))
    assert len(first) == 1
    assert {e.id for e, _ in rest} == {"le_1", "le_4"} - {le.id}

    assert queries.list_refund_ledger_entries(conn, "mer_none", 10, None) == []