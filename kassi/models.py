"""Row types for the payment database and conversion from stored rows."""

import dataclasses
import functools
import json
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Type, TypeVar, Union, get_args

_JSON = {"json": True}

T = TypeVar("T")


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond // 1000:03d}Z"


def _parse_timestamp(raw: Union[str, bytes]) -> datetime:
    text = raw.decode() if isinstance(raw, bytes) else raw
    text = text.strip().replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Timestamps are stored as UTC text with millisecond precision, so that they
# compare correctly as strings and match the schema's column defaults.
sqlite3.register_adapter(datetime, _format_timestamp)


@dataclass(frozen=True)
class Network:
    id: str
    display_name: str
    block_time_ms: int
    confirmations: int
    is_active: bool
    created_at: datetime


@dataclass(frozen=True)
class Merchant:
    id: str
    name: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class NewMerchant:
    id: str


@dataclass(frozen=True)
class MerchantConfig:
    id: str
    merchant_id: str
    api_key_hash: Optional[str]
    encrypted_seed: Optional[str]
    webhook_secret: str
    webhook_url: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class NewMerchantConfig:
    id: str
    merchant_id: str
    webhook_secret: str
    encrypted_seed: Optional[str] = None


@dataclass(frozen=True)
class SettlementDestination:
    id: str
    merchant_id: str
    network_id: str
    address: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class NewSettlementDestination:
    id: str
    merchant_id: str
    network_id: str
    address: str


@dataclass(frozen=True)
class Signer:
    id: str
    merchant_id: str
    address: str
    signer_type: str
    linked_at: datetime


@dataclass(frozen=True)
class NewSigner:
    id: str
    merchant_id: str
    address: str
    signer_type: str


@dataclass(frozen=True)
class Asset:
    id: str
    network_id: str
    caip19: str
    contract_address: Optional[str]
    symbol: str
    name: str
    decimals: int
    coingecko_id: Optional[str]
    is_active: bool
    created_at: datetime


@dataclass(frozen=True)
class DepositAddress:
    id: str
    merchant_id: str
    label: Optional[str]
    address_type: str
    created_at: datetime


@dataclass(frozen=True)
class NewDepositAddress:
    id: str
    merchant_id: str
    address_type: str
    label: Optional[str] = None


@dataclass(frozen=True)
class NetworkAddress:
    id: str
    deposit_address_id: str
    network_id: str
    address: str
    derivation_index: int


@dataclass(frozen=True)
class NewNetworkAddress:
    id: str
    deposit_address_id: str
    network_id: str
    address: str
    derivation_index: int


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    deposit_address_id: str
    merchant_id: str
    fiat_amount: str
    fiat_currency: str
    status: str
    confirmed_at: Optional[datetime]
    expires_at: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class NewPaymentIntent:
    id: str
    deposit_address_id: str
    merchant_id: str
    fiat_amount: str
    fiat_currency: str
    expires_at: datetime


@dataclass(frozen=True)
class Quote:
    id: str
    payment_intent_id: str
    asset_id: str
    exchange_rate: str
    crypto_amount: str
    expires_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class NewQuote:
    id: str
    payment_intent_id: str
    asset_id: str
    exchange_rate: str
    crypto_amount: str
    expires_at: datetime


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    deposit_address_id: str
    payment_intent_id: Optional[str]
    asset_id: str
    network_id: str
    entry_type: str
    status: str
    amount: str
    fee_amount: Optional[str]
    sender: Optional[str]
    destination: Optional[str]
    onchain_ref: str
    reason: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class NewLedgerEntry:
    id: str
    deposit_address_id: str
    asset_id: str
    network_id: str
    entry_type: str
    status: str
    amount: str
    onchain_ref: str
    payment_intent_id: Optional[str] = None
    destination: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class WebhookDelivery:
    id: str
    merchant_id: str
    event_type: str
    reference_id: str
    url: str
    payload: Any = field(metadata=_JSON)
    status: str = "pending"
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    response_code: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PriceCache:
    id: str
    asset_id: str
    fiat_currency: str
    price: str
    source: str
    fetched_at: datetime


@dataclass(frozen=True)
class Job:
    id: int
    queue: str
    payload: Any = field(metadata=_JSON)
    status: str = "pending"
    attempts: int = 0
    max_attempts: int = 0
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class NewJob:
    queue: str
    payload: Any = field(metadata=_JSON)
    max_attempts: int = 0
    scheduled_at: Optional[datetime] = None


@dataclass(frozen=True)
class Nonce:
    id: int
    nonce: str
    expires_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class NewNonce:
    nonce: str
    expires_at: datetime


@functools.lru_cache(maxsize=None)
def _field_kinds(model: type) -> Dict[str, Tuple[Any, bool, bool]]:
    kinds = {}
    for f in dataclasses.fields(model):
        args = [a for a in get_args(f.type) if a is not type(None)]
        base = args[0] if args else f.type
        has_default = (
            f.default is not dataclasses.MISSING
            or f.default_factory is not dataclasses.MISSING
        )
        kinds[f.name] = (base, bool(f.metadata.get("json")), has_default)
    return kinds


def _convert(raw: Any, base: Any, is_json: bool) -> Any:
    if raw is None:
        return None
    if is_json:
        return json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    if base is datetime:
        return raw if isinstance(raw, datetime) else _parse_timestamp(raw)
    if base is bool:
        return bool(raw)
    if base is int:
        return int(raw)
    return raw


def from_row(model: Type[T], row: Union[Mapping, sqlite3.Row]) -> T:
    """Build a model instance from a stored row, converting column values."""
    if not (isinstance(model, type) and dataclasses.is_dataclass(model)):
        raise TypeError(f"{model!r} is not a model class")
    values = {}
    for name, (base, is_json, has_default) in _field_kinds(model).items():
        try:
            raw = row[name]
        except (KeyError, IndexError):
            if has_default:
                continue
            raise KeyError(name) from None
        values[name] = _convert(raw, base, is_json)
    return model(**values)