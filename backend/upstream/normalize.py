from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from dateutil import parser as date_parser
from loguru import logger

from app.domain import PurchaseRecord
from reconciliation.errors import InvalidInputError
from reconciliation.keys import build_token_key, canonical_token_key

_MILLISECONDS_THRESHOLD = 10_000_000_000


def _first(raw: dict[str, Any], *keys: str) -> Any:
    """Return the first populated value among aliased upstream field names."""
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _MILLISECONDS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, dict) and "seconds" in value:
        return _parse_timestamp(value.get("seconds"))
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return _parse_timestamp(int(stripped))
        try:
            parsed = date_parser.isoparse(stripped)
        except (ValueError, TypeError):
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        # Route through str so floats keep their printed precision.
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite() or parsed < 0:
        return None
    return parsed


def _resolve_token_key(raw: dict[str, Any], token_key: str | None, default_chain: str) -> str | None:
    if token_key:
        return token_key
    explicit = _clean_str(raw.get("tokenKey"))
    try:
        if explicit:
            return canonical_token_key(explicit)
        contract = _clean_str(raw.get("contract"))
        token_id = _clean_str(raw.get("tokenId"))
        if not contract or token_id is None:
            return None
        chain = _clean_str(raw.get("chain")) or default_chain
        return build_token_key(chain, contract, token_id)
    except InvalidInputError:
        return None


def normalize_purchase(
    raw: Any,
    *,
    token_key: str | None = None,
    fallback_buyer: str | None = None,
    default_chain: str = "gunz",
) -> PurchaseRecord | None:
    """Map one untrusted marketplace payload onto :class:`PurchaseRecord`.

    Returns ``None`` (after logging) when the record lacks a parseable price,
    timestamp or token identity; those fields are never fabricated.
    """

    if not isinstance(raw, dict):
        logger.warning("Dropping non-object marketplace record: {!r}", raw)
        return None

    timestamp = _parse_timestamp(_first(raw, "purchaseDate", "timestamp", "createdAt"))
    price = _parse_decimal(_first(raw, "priceGun", "price"))
    resolved_key = _resolve_token_key(raw, token_key, default_chain)
    if timestamp is None or price is None or resolved_key is None:
        logger.warning(
            "Dropping marketplace record {} (timestamp={}, price={}, token_key={})",
            raw.get("id") or raw.get("purchaseId"),
            timestamp,
            price,
            resolved_key,
        )
        return None

    tx_id = _clean_str(_first(raw, "txHash", "transactionHash"))
    tx_id = tx_id.lower() if tx_id else None
    order_id = _clean_str(raw.get("orderId"))
    purchase_id = (
        _clean_str(_first(raw, "id", "purchaseId"))
        or tx_id
        or order_id
        or f"{resolved_key}:{int(timestamp.timestamp())}:{price}"
    )
    buyer = _clean_str(_first(raw, "buyer", "buyerAddress")) or fallback_buyer or ""

    return PurchaseRecord(
        purchase_id=purchase_id,
        token_key=resolved_key,
        buyer_address=buyer.lower(),
        price_in_game_currency=price,
        purchase_timestamp=timestamp,
        price_usd=_parse_decimal(raw.get("priceUsd")),
        tx_id=tx_id,
        order_id=order_id,
    )


def extract_items(payload: Any, *keys: str) -> list[Any]:
    """Pull the record list out of an upstream envelope."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    candidates = tuple(payload.get(key) for key in keys)
    return next((value for value in candidates if isinstance(value, list)), [])


def normalize_purchases(
    raw_items: Iterable[Any],
    *,
    token_key: str | None = None,
    fallback_buyer: str | None = None,
    default_chain: str = "gunz",
) -> list[PurchaseRecord]:
    records: list[PurchaseRecord] = []
    for raw in raw_items:
        record = normalize_purchase(
            raw,
            token_key=token_key,
            fallback_buyer=fallback_buyer,
            default_chain=default_chain,
        )
        if record is not None:
            records.append(record)
    return records


__all__ = ["extract_items", "normalize_purchase", "normalize_purchases"]
