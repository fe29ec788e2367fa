"""
Normalization of marketplace "is it still for sale" payloads.

The marketplace has reported availability under many different field
names over time. ``normalize_sale_status`` is the only place that knows
about them; everything downstream sees MarketplaceSaleStatus.
"""

import logging
from typing import Any, Dict, Optional

from app.core.enums import MarketplaceSaleStatus

logger = logging.getLogger(__name__)

# Checked in order; the first present field wins
STATUS_FIELDS = (
    "saleStatus",
    "status",
    "state",
    "sellStatus",
    "sell_status",
    "sellingStatus",
    "selling_status",
    "productStatus",
    "product_status",
    "sale_status",
)

SOLD_FLAGS = ("soldOut", "sold_out", "isSold", "is_sold", "sold")
AVAILABLE_FLAGS = ("available", "isAvailable", "is_available")

SELLING_VALUES = {"SELLING", "SALE", "ON_SALE", "ONSALE", "ACTIVE", "AVAILABLE", "FOR_SALE"}
SOLD_VALUES = {
    "SOLD", "SOLD_OUT", "SOLDOUT", "COMPLETED", "TRADE_COMPLETED",
    "RESERVED", "ON_HOLD", "HOLD", "DELETED", "INACTIVE", "CLOSED", "ENDED",
}


def _status_from_value(value: Any) -> Optional[MarketplaceSaleStatus]:
    if value is None:
        return None
    text = str(value).strip().upper().replace("-", "_").replace(" ", "_")
    if text in SELLING_VALUES:
        return MarketplaceSaleStatus.SELLING
    if text in SOLD_VALUES:
        return MarketplaceSaleStatus.SOLD
    return MarketplaceSaleStatus.UNKNOWN


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def normalize_sale_status(payload: Optional[Dict[str, Any]]) -> MarketplaceSaleStatus:
    """
    Map a raw product payload onto SELLING / SOLD / UNKNOWN.

    A zero quantity always means SOLD. Otherwise the first status field
    present decides; boolean sold/available flags are only consulted when
    no status field exists. A payload with none of these is UNKNOWN.
    """
    if not payload:
        return MarketplaceSaleStatus.UNKNOWN

    if "quantity" in payload and _as_int(payload.get("quantity")) == 0:
        return MarketplaceSaleStatus.SOLD

    for field in STATUS_FIELDS:
        if payload.get(field) is not None:
            status = _status_from_value(payload[field])
            if status is MarketplaceSaleStatus.UNKNOWN:
                logger.warning("Unrecognised marketplace status %s=%r", field, payload[field])
            return status

    sold_flags = [payload[flag] for flag in SOLD_FLAGS if isinstance(payload.get(flag), bool)]
    if True in sold_flags:
        return MarketplaceSaleStatus.SOLD
    for flag in AVAILABLE_FLAGS:
        if payload.get(flag) is False:
            return MarketplaceSaleStatus.SOLD
        if payload.get(flag) is True:
            return MarketplaceSaleStatus.SELLING
    if sold_flags:
        return MarketplaceSaleStatus.SELLING

    return MarketplaceSaleStatus.UNKNOWN


def extract_price(payload: Dict[str, Any]) -> Optional[int]:
    return _as_int(payload.get("price"))


def extract_quantity(payload: Dict[str, Any]) -> Optional[int]:
    return _as_int(payload.get("quantity"))
