# markets/scryfall.py
"""
Scryfall catalog client: card search, by-name lookup, printings and prices.

Scryfall asks for no more than ~10 requests/second and needs no API key.
"""
import os
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import requests
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from tracker.logger import get_logger
from tracker.models import Card, CardPrint

logger = get_logger(__name__)

API_BASE = os.getenv("SCRYFALL_API_BASE", "https://api.scryfall.com").rstrip("/")
SCRYFALL_TIMEOUT = float(os.getenv("SCRYFALL_TIMEOUT", "15"))
USER_AGENT = os.getenv("SCRYFALL_USER_AGENT", "mtg-sniper/0.1")

SESSION = requests.Session()
SESSION.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})


class CatalogError(Exception):
    """Scryfall returned an unexpected response."""


class CardNotFound(CatalogError):
    pass


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


@retry(
    retry=retry_if_exception(_is_transient),
    wait=wait_exponential_jitter(initial=1, max=10),
    stop=stop_after_attempt(3),
    reraise=True,
)
def _get(path: str, params: Optional[Dict[str, str]] = None) -> requests.Response:
    resp = SESSION.get(f"{API_BASE}{path}", params=params, timeout=SCRYFALL_TIMEOUT)
    if resp.status_code == 429 or resp.status_code >= 500:
        resp.raise_for_status()
    return resp


def _price_cents(raw: Any) -> Optional[int]:
    if raw in (None, ""):
        return None
    try:
        return int((Decimal(str(raw)) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        return None


def _image(card: Dict[str, Any]) -> str:
    uris = card.get("image_uris")
    if not uris and card.get("card_faces"):
        # double-faced cards keep images on each face
        uris = card["card_faces"][0].get("image_uris")
    uris = uris or {}
    return uris.get("normal") or uris.get("large") or uris.get("small") or ""


def _check(resp: requests.Response, what: str) -> Dict[str, Any]:
    if resp.status_code != 200:
        raise CatalogError(f"Scryfall API error for {what}: {resp.status_code}")
    return resp.json()


def search_cards(query: str) -> List[Dict[str, Any]]:
    """Raw Scryfall card objects matching a search query (Scryfall syntax)."""
    resp = _get("/cards/search", {"q": query})
    if resp.status_code == 404:
        return []
    return _check(resp, query).get("data", [])


def _search_prints(card_name: str) -> List[Dict[str, Any]]:
    resp = _get(
        "/cards/search",
        {"q": f'!"{card_name}"', "order": "released", "dir": "desc", "unique": "prints"},
    )
    if resp.status_code == 404:
        raise CardNotFound(f"Card not found: {card_name}")
    data = _check(resp, card_name).get("data", [])
    if not data:
        raise CardNotFound(f"Card not found: {card_name}")
    return data


def to_card(raw: Dict[str, Any]) -> Card:
    prices = raw.get("prices") or {}
    return Card(
        id=raw["id"],
        name=raw.get("name", ""),
        set_name=raw.get("set_name", ""),
        image=_image(raw),
        usd_cents=_price_cents(prices.get("usd")),
        usd_foil_cents=_price_cents(prices.get("usd_foil")),
        collector_number=raw.get("collector_number"),
        rarity=raw.get("rarity"),
    )


def to_print(raw: Dict[str, Any]) -> CardPrint:
    prices = raw.get("prices") or {}
    return CardPrint(
        id=raw["id"],
        set_name=raw.get("set_name", ""),
        collector_number=raw.get("collector_number", ""),
        rarity=raw.get("rarity", ""),
        image=_image(raw),
        usd_cents=_price_cents(prices.get("usd")),
        usd_foil_cents=_price_cents(prices.get("usd_foil")),
        finishes=list(raw.get("finishes") or []),
    )


def fetch_card_by_name(card_name: str) -> Card:
    """The most recent printing of an exactly-named card."""
    return to_card(_search_prints(card_name)[0])


def fetch_card_prints(card_name: str) -> Dict[str, Any]:
    data = _search_prints(card_name)
    logger.debug("Found %d printings of '%s'.", len(data), card_name)
    return {
        "name": data[0].get("name", card_name),
        "oracle_id": data[0].get("oracle_id", ""),
        "prints": [to_print(raw) for raw in data],
    }


def get_card_prices(card_id: str) -> Dict[str, Any]:
    resp = _get(f"/cards/{card_id}")
    if resp.status_code == 404:
        raise CardNotFound(f"Card not found: {card_id}")
    card = _check(resp, card_id)
    prices = card.get("prices") or {}
    out: Dict[str, Any] = {
        "usd": prices.get("usd"),
        "usdFoil": prices.get("usd_foil"),
    }
    if card.get("tcgplayer_id"):
        out["tcgplayer"] = {
            "url": (card.get("purchase_uris") or {}).get("tcgplayer", ""),
            "updatedAt": card.get("released_at"),
        }
    return out
