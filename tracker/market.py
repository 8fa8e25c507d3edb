# tracker/market.py
from typing import Any, Dict, List, Optional, Sequence

from .models import Listing

# A listing is a deal when it is this far below the median asking price
DEAL_DISCOUNT = 0.10


def median_price_cents(listings: Sequence[Listing]) -> Optional[int]:
    prices = sorted(l.price_cents for l in listings)
    if not prices:
        return None
    return prices[len(prices) // 2]


def flag_deals(listings: Sequence[Listing]) -> List[Dict[str, Any]]:
    median = median_price_cents(listings)
    out = []
    for listing in listings:
        row = listing.to_dict()
        row["isDeal"] = median is not None and listing.price_cents < median * (1 - DEAL_DISCOUNT)
        out.append(row)
    return out


def get_market_data(card_name: str, catalog, market) -> Dict[str, Any]:
    """
    Catalog details for a card alongside current marketplace listings.

    catalog needs fetch_card_by_name(name); market needs
    search_listings(query).
    """
    card = catalog.fetch_card_by_name(card_name)
    listings = market.search_listings(card.name)
    return {"card": card.to_dict(), "listings": flag_deals(listings)}
