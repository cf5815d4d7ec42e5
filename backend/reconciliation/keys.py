"""Address, token id and cache key normalization."""

from __future__ import annotations

import re
from typing import Any

from app.repositories.cache_repository import CACHE_NAMESPACE

from .errors import InvalidInputError

ZERO_ADDRESS = "0x" + "0" * 40

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_CHAIN_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def normalize_address(value: Any) -> str:
    if not isinstance(value, str) or not _ADDRESS_RE.match(value.strip()):
        raise InvalidInputError(f"Invalid address: {value!r}")
    return value.strip().lower()


def normalize_token_id(value: Any) -> str:
    if isinstance(value, bool):
        raise InvalidInputError(f"Invalid token id: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise InvalidInputError(f"Invalid token id: {value!r}")
        return str(value)
    if isinstance(value, str) and value.strip().isascii() and value.strip().isdecimal():
        return str(int(value.strip()))
    raise InvalidInputError(f"Invalid token id: {value!r}")


def build_token_key(chain: str, contract_address: str, token_id: Any) -> str:
    if not isinstance(chain, str) or not _CHAIN_RE.match(chain.strip()):
        raise InvalidInputError(f"Invalid chain name: {chain!r}")
    return f"{chain.strip().lower()}:{normalize_address(contract_address)}:{normalize_token_id(token_id)}"


def parse_token_key(token_key: str) -> tuple[str, str, str]:
    parts = token_key.split(":") if isinstance(token_key, str) else []
    if len(parts) != 3 or not all(parts):
        raise InvalidInputError(f"Invalid token key: {token_key!r}")
    chain, contract, token_id = parts
    return chain.lower(), normalize_address(contract), normalize_token_id(token_id)


def canonical_token_key(token_key: str) -> str:
    return build_token_key(*parse_token_key(token_key))


def build_cache_key(schema_version: str, wallet_address: str, token_key: str) -> str:
    return f"{CACHE_NAMESPACE}:nft:detail:{schema_version}:{wallet_address.lower()}:{token_key}"


__all__ = [
    "ZERO_ADDRESS",
    "build_cache_key",
    "build_token_key",
    "canonical_token_key",
    "normalize_address",
    "normalize_token_id",
    "parse_token_key",
]
