"""Server configuration loaded from environment variables."""

from __future__ import annotations

import dataclasses
import os
import re
from dataclasses import dataclass, field
from typing import Mapping

_UNSIGNED = re.compile(r"\+?[0-9]+")
_SIGNED = re.compile(r"[+-]?[0-9]+")

_U16_MAX = 2**16 - 1
_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1


def _parse_u16(name: str, raw: str) -> int:
    if not _UNSIGNED.fullmatch(raw):
        raise ValueError(f"invalid value for {name.upper()}: {raw!r}")
    value = int(raw)
    if value > _U16_MAX:
        raise ValueError(f"{name.upper()} is out of range: {raw!r}")
    return value


def _parse_i64(name: str, raw: str) -> int:
    if not _SIGNED.fullmatch(raw):
        raise ValueError(f"invalid value for {name.upper()}: {raw!r}")
    value = int(raw)
    if not _I64_MIN <= value <= _I64_MAX:
        raise ValueError(f"{name.upper()} is out of range: {raw!r}")
    return value


_PARSERS = {
    "port": _parse_u16,
    "quote_lock_duration_secs": _parse_i64,
    "price_cache_stale_secs": _parse_i64,
}


@dataclass(frozen=True)
class Config:
    """Settings the payment server needs to start."""

    database_url: str
    session_jwt_secret: str = field(repr=False)
    api_key_prefix: str
    infisical_client_id: str
    infisical_client_secret: str = field(repr=False)
    infisical_project_id: str
    internal_basic_auth_token: str = field(repr=False)
    admin_basic_auth_token: str = field(repr=False)
    port: int = 3000
    quote_lock_duration_secs: int = 1800
    price_cache_stale_secs: int = 300

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Read the configuration from the environment (names are case-insensitive).

        Raises ValueError when a required variable is missing or a number is invalid.
        """
        source = os.environ if environ is None else environ
        lowered = {key.lower(): value for key, value in source.items()}
        values: dict[str, object] = {}
        missing: list[str] = []
        for f in dataclasses.fields(cls):
            raw = lowered.get(f.name)
            if raw is None:
                if f.default is dataclasses.MISSING:
                    missing.append(f.name.upper())
                continue
            parser = _PARSERS.get(f.name)
            values[f.name] = parser(f.name, raw) if parser else raw
        if missing:
            raise ValueError(
                "failed to load config from environment: missing "
                + ", ".join(missing)
            )
        return cls(**values)