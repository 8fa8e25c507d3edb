# tracker/models.py
import datetime
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import pytz

SCOPE_SPECIFIC = "specific"
SCOPE_ANY = "any"

_SCOPE_ALIASES = {
    "specific": SCOPE_SPECIFIC,
    "specific print": SCOPE_SPECIFIC,
    "any": SCOPE_ANY,
    "any print": SCOPE_ANY,
}


class ValidationError(ValueError):
    """Raised when user-supplied data cannot form a valid record."""


def now_utc_iso() -> str:
    return datetime.datetime.now(tz=pytz.UTC).isoformat()


def parse_price_cents(value: Any) -> int:
    """
    Parse a dollar amount ("4.50", 4.5, Decimal) into integer cents.
    Rounds half-up to the cent. Raises ValidationError for anything that
    is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Invalid price: {value!r}")
    try:
        amount = Decimal(str(value).strip())
        if not amount.is_finite():
            raise ValidationError(f"Invalid price: {value!r}")
        # quantize overflows the context precision for huge magnitudes
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid price: {value!r}")


def cents_to_str(cents: Optional[int]) -> str:
    if cents is None or cents < 0:
        return "Unavailable"
    return f"${cents / 100:.2f}"


def cents_to_float(cents: Optional[int]) -> Optional[float]:
    if cents is None:
        return None
    return round(cents / 100, 2)


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass
class WatchItem:
    """
    A user's request to be alerted about a card at or below a target price.
    """
    id: str
    card_name: str
    target_price_cents: int
    scope: str = SCOPE_ANY
    set_name: Optional[str] = None
    collector_number: Optional[str] = None
    card_id: Optional[str] = None
    created_at: str = ""

    def search_query(self) -> str:
        parts = [self.card_name]
        if self.scope == SCOPE_SPECIFIC:
            parts += [self.set_name or "", self.collector_number or ""]
        return " ".join(p for p in parts if p)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "cardName": self.card_name,
            "targetPrice": cents_to_float(self.target_price_cents),
            "scope": self.scope,
            "createdAt": self.created_at,
        }
        if self.set_name:
            out["setName"] = self.set_name
        if self.collector_number:
            out["collectorNumber"] = self.collector_number
        if self.card_id:
            out["cardId"] = self.card_id
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatchItem":
        # Records written before scope existed carry only an optional set name
        return cls(
            id=str(data["id"]),
            card_name=data["cardName"],
            target_price_cents=parse_price_cents(data["targetPrice"]),
            scope=_SCOPE_ALIASES.get(_clean(data.get("scope")).lower(), SCOPE_ANY),
            set_name=data.get("setName") or None,
            collector_number=data.get("collectorNumber") or None,
            card_id=data.get("cardId") or None,
            created_at=data.get("createdAt", ""),
        )


def new_watch_item(
    card_name: Any,
    target_price: Any,
    scope: Any = SCOPE_ANY,
    set_name: Any = None,
    collector_number: Any = None,
    card_id: Any = None,
) -> WatchItem:
    """
    Validate user input and build a fresh WatchItem.

    Specific-scope items must name both the set and the collector number;
    any-scope items never carry them.
    """
    name = _clean(card_name)
    if not name:
        raise ValidationError("Card name is required")

    if target_price is None or _clean(target_price) == "":
        raise ValidationError("Target price is required")
    cents = parse_price_cents(target_price)
    if cents <= 0:
        raise ValidationError("Target price must be greater than 0")

    normalized_scope = _SCOPE_ALIASES.get(_clean(scope).lower() or SCOPE_ANY)
    if normalized_scope is None:
        raise ValidationError('Scope must be "specific" or "any"')

    set_name = _clean(set_name) or None
    collector_number = _clean(collector_number) or None
    if normalized_scope == SCOPE_SPECIFIC:
        if not set_name or not collector_number:
            raise ValidationError(
                "Set name and collector number are required for specific scope"
            )
    else:
        set_name = None
        collector_number = None

    return WatchItem(
        id=uuid.uuid4().hex,
        card_name=name,
        target_price_cents=cents,
        scope=normalized_scope,
        set_name=set_name,
        collector_number=collector_number,
        card_id=_clean(card_id) or None,
        created_at=now_utc_iso(),
    )


@dataclass
class Listing:
    """A marketplace offer. Fetched fresh on every pass, never stored."""
    external_id: str
    title: str
    price_cents: int
    url: str = ""
    currency: str = "USD"
    image_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "externalId": self.external_id,
            "title": self.title,
            "price": cents_to_float(self.price_cents),
            "currency": self.currency,
            "url": self.url,
            "imageUrl": self.image_url,
        }


@dataclass
class NotificationRecord:
    watch_item_id: str
    last_notified_listing_id: str
    last_notified_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "watchItemId": self.watch_item_id,
            "lastNotifiedListingId": self.last_notified_listing_id,
            "lastNotifiedAt": self.last_notified_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationRecord":
        return cls(
            watch_item_id=str(data["watchItemId"]),
            last_notified_listing_id=str(data["lastNotifiedListingId"]),
            last_notified_at=data.get("lastNotifiedAt", ""),
        )


@dataclass
class Subscription:
    endpoint: str
    p256dh: str
    auth: str
    created_at: str = ""

    def subscription_info(self) -> Dict[str, Any]:
        """Shape expected by pywebpush."""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

    def to_dict(self) -> Dict[str, Any]:
        out = self.subscription_info()
        out["createdAt"] = self.created_at
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "Subscription":
        if not isinstance(data, dict):
            raise ValidationError("Subscription object is required")
        endpoint = _clean(data.get("endpoint"))
        keys = data.get("keys")
        if not endpoint or not isinstance(keys, dict):
            raise ValidationError("Invalid subscription object")
        p256dh = _clean(keys.get("p256dh"))
        auth = _clean(keys.get("auth"))
        if not p256dh or not auth:
            raise ValidationError("Subscription keys must include p256dh and auth")
        return cls(
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            created_at=data.get("createdAt", ""),
        )


@dataclass
class Card:
    id: str
    name: str
    set_name: str
    image: str = ""
    usd_cents: Optional[int] = None
    usd_foil_cents: Optional[int] = None
    collector_number: Optional[str] = None
    rarity: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "set": self.set_name,
            "image": self.image,
            "marketPrice": cents_to_float(self.usd_cents),
            "prices": {
                "usd": cents_to_float(self.usd_cents),
                "usdFoil": cents_to_float(self.usd_foil_cents),
            },
            "collectorNumber": self.collector_number,
            "rarity": self.rarity,
        }


@dataclass
class CardPrint:
    id: str
    set_name: str
    collector_number: str
    rarity: str = ""
    image: str = ""
    usd_cents: Optional[int] = None
    usd_foil_cents: Optional[int] = None
    finishes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "setName": self.set_name,
            "collectorNumber": self.collector_number,
            "rarity": self.rarity,
            "image": self.image,
            "marketPrice": cents_to_float(self.usd_cents),
            "foilPrice": cents_to_float(self.usd_foil_cents),
            "finishes": list(self.finishes),
        }
