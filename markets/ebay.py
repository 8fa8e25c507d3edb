# markets/ebay.py
import os
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import requests

from tracker.logger import get_logger
from tracker.models import Listing

logger = get_logger(__name__)

EBAY_CLIENT_ID = os.getenv("EBAY_CLIENT_ID", "").strip()
EBAY_CLIENT_SECRET = os.getenv("EBAY_CLIENT_SECRET", "").strip()
EBAY_ENVIRONMENT = os.getenv("EBAY_ENVIRONMENT", "PRODUCTION").strip().upper()
EBAY_TIMEOUT = float(os.getenv("EBAY_TIMEOUT", "15"))

if EBAY_ENVIRONMENT == "SANDBOX":
    API_BASE = "https://api.sandbox.ebay.com"
else:
    API_BASE = "https://api.ebay.com"

OAUTH_SCOPE = "https://api.ebay.com/oauth/api_scope"
MTG_CATEGORY_ID = "183454"
MARKETPLACE_ID = "EBAY_US"
FIXED_PRICE_FILTER = "buyingOptions:{FIXED_PRICE},priceCurrency:USD"

# Tokens are treated as expired this many seconds early
EXPIRY_MARGIN = 60


class MarketplaceError(Exception):
    """Marketplace search failed."""


class MarketplaceAuthError(MarketplaceError):
    """No usable marketplace access token could be obtained."""


class TokenCache:
    """
    Client-credentials bearer token plus its expiry.

    Owned by whoever constructs the EbayClient; there is no process-wide
    token.
    """

    def __init__(
        self,
        client_id: str = EBAY_CLIENT_ID,
        client_secret: str = EBAY_CLIENT_SECRET,
        oauth_url: str = f"{API_BASE}/identity/v1/oauth2/token",
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.oauth_url = oauth_url
        self.clock = clock
        self.token: Optional[str] = None
        self.expires_at: float = 0.0

    def clear(self) -> None:
        self.token = None
        self.expires_at = 0.0

    def is_valid(self) -> bool:
        return bool(self.token) and self.clock() < self.expires_at

    def get(self, session: requests.Session) -> str:
        if self.is_valid():
            return self.token

        if not (self.client_id and self.client_secret):
            self.clear()
            raise MarketplaceAuthError(
                "EBAY_CLIENT_ID and EBAY_CLIENT_SECRET must be set"
            )

        now = self.clock()
        try:
            resp = session.post(
                self.oauth_url,
                auth=(self.client_id, self.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={"grant_type": "client_credentials", "scope": OAUTH_SCOPE},
                timeout=EBAY_TIMEOUT,
            )
        except requests.RequestException as e:
            self.clear()
            logger.error("eBay OAuth request failed: %s", e)
            raise MarketplaceAuthError(f"eBay OAuth request failed: {e}") from e

        if resp.status_code != 200:
            self.clear()
            logger.error("eBay OAuth failed (%s): %s", resp.status_code, resp.text[:200])
            raise MarketplaceAuthError(
                f"eBay OAuth error: {resp.status_code} {resp.text[:200]}"
            )

        try:
            data = resp.json()
            token = data["access_token"]
            expires_in = int(data.get("expires_in", 7200))
        except (ValueError, KeyError, TypeError) as e:
            self.clear()
            raise MarketplaceAuthError(f"Malformed eBay OAuth response: {e}") from e

        self.token = token
        self.expires_at = now + expires_in - EXPIRY_MARGIN
        logger.info("eBay OAuth token obtained for %s (expires in %ds).", EBAY_ENVIRONMENT, expires_in)
        return token


def _parse_price_cents(summary: Dict[str, Any]) -> Optional[int]:
    price = summary.get("price") or {}
    try:
        amount = Decimal(str(price.get("value")))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return int((amount * 100).to_integral_value())


def parse_search_results(data: Dict[str, Any]) -> List[Listing]:
    """Turn a Browse API item_summary/search response into Listings."""
    listings: List[Listing] = []
    for summary in data.get("itemSummaries") or []:
        price_cents = _parse_price_cents(summary)
        item_id = summary.get("itemId")
        if price_cents is None or not item_id:
            logger.debug("Skipping summary without usable price/id: %s", summary.get("title"))
            continue
        image = (summary.get("image") or {}).get("imageUrl") or ""
        listings.append(
            Listing(
                external_id=str(item_id),
                title=summary.get("title", ""),
                price_cents=price_cents,
                url=summary.get("itemWebUrl", ""),
                currency=(summary.get("price") or {}).get("currency", "USD"),
                image_url=image,
            )
        )
    return listings


class EbayClient:
    def __init__(
        self,
        token_cache: Optional[TokenCache] = None,
        session: Optional[requests.Session] = None,
        search_url: str = f"{API_BASE}/buy/browse/v1/item_summary/search",
    ):
        self.token_cache = token_cache or TokenCache()
        self.session = session or requests.Session()
        self.search_url = search_url

    def authenticate(self) -> str:
        return self.token_cache.get(self.session)

    def _search(self, params: Dict[str, str]) -> List[Listing]:
        token = self.authenticate()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-EBAY-C-MARKETPLACE-ID": MARKETPLACE_ID,
        }
        logger.debug("eBay search: %s", params)
        resp = self.session.get(
            self.search_url, headers=headers, params=params, timeout=EBAY_TIMEOUT
        )
        if resp.status_code != 200:
            detail = ""
            try:
                body = resp.json()
                detail = body.get("error_description") or ""
                if not detail and body.get("errors"):
                    detail = body["errors"][0].get("message", "")
            except (ValueError, AttributeError, IndexError):
                detail = resp.text[:200]
            raise MarketplaceError(f"eBay API error: {resp.status_code} {detail}".strip())
        return parse_search_results(resp.json())

    def search_fixed_price(self, query: str, limit: int = 10) -> List[Listing]:
        """
        Fixed-price USD listings for query, cheapest first.
        """
        params = {
            "category_ids": MTG_CATEGORY_ID,
            "q": query,
            "filter": FIXED_PRICE_FILTER,
            "sort": "price",
            "limit": str(limit),
        }
        listings = self._search(params)
        listings.sort(key=lambda l: l.price_cents)
        return listings

    def search_listings(
        self,
        query: str,
        set_name: Optional[str] = None,
        collector_number: Optional[str] = None,
        limit: int = 20,
    ) -> List[Listing]:
        refined = " ".join(p for p in (query, set_name, collector_number) if p)
        params = {
            "category_ids": MTG_CATEGORY_ID,
            "q": refined,
            "limit": str(limit),
        }
        return self._search(params)
