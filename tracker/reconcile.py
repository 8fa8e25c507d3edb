# tracker/reconcile.py
import json
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .logger import get_logger
from .models import (
    Listing,
    NotificationRecord,
    Subscription,
    WatchItem,
    cents_to_str,
    now_utc_iso,
)

logger = get_logger(__name__)

POLICY_INCLUSIVE = "inclusive"  # price <= target
POLICY_STRICT = "strict"  # price < target
POLICIES = (POLICY_INCLUSIVE, POLICY_STRICT)

MATCH_POLICY = os.getenv("SNIPER_MATCH_POLICY", POLICY_INCLUSIVE).strip().lower()
SEARCH_LIMIT = int(os.getenv("SNIPER_SEARCH_LIMIT", "10"))

NOTIFICATION_BODY = "We found a deal for the card you requested"

# search(query, limit) -> listings sorted cheapest first
SearchFn = Callable[[str, int], List[Listing]]
# notify(subscriptions, payload) -> delivery failure diagnostics
NotifyFn = Callable[[Sequence[Subscription], str], List[str]]


def validate_policy(policy: str) -> str:
    policy = (policy or "").strip().lower()
    if policy not in POLICIES:
        raise ValueError(
            f"Unknown match policy {policy!r}; expected one of {', '.join(POLICIES)}"
        )
    return policy


def qualifies(price_cents: int, target_cents: int, policy: str = POLICY_INCLUSIVE) -> bool:
    if policy == POLICY_STRICT:
        return price_cents < target_cents
    return price_cents <= target_cents


def cheapest(listings: Sequence[Listing]) -> Optional[Listing]:
    """Lowest-priced listing; the first one seen wins ties."""
    best: Optional[Listing] = None
    for listing in listings:
        if best is None or listing.price_cents < best.price_cents:
            best = listing
    return best


def build_payload(item: WatchItem, listing: Listing) -> str:
    return json.dumps(
        {
            "title": f"{item.card_name} was sniped for {cents_to_str(listing.price_cents)}",
            "body": NOTIFICATION_BODY,
            "url": listing.url,
        }
    )


@dataclass
class PassResult:
    checked: int = 0
    notified: int = 0
    errors: List[str] = field(default_factory=list)
    history: Dict[str, NotificationRecord] = field(default_factory=dict)
    matches: List[Tuple[WatchItem, Listing]] = field(default_factory=list)

    def summary(self) -> Dict[str, object]:
        out: Dict[str, object] = {"checked": self.checked, "notified": self.notified}
        if self.errors:
            out["errors"] = list(self.errors)
        return out


def run_pass(
    watchlist: Sequence[WatchItem],
    subscriptions: Sequence[Subscription],
    history: Dict[str, NotificationRecord],
    search: SearchFn,
    notify: NotifyFn,
    *,
    limit: int = SEARCH_LIMIT,
    policy: str = MATCH_POLICY,
    now: Optional[Callable[[], str]] = None,
) -> PassResult:
    """
    Check every watch item against current listings and notify once per
    distinct qualifying listing.

    history is not modified; the updated mapping is returned in
    PassResult.history for the caller to persist in one write.
    """
    policy = validate_policy(policy)
    limit = max(1, min(int(limit), 200))
    now = now or now_utc_iso

    result = PassResult(history=dict(history))

    for item in watchlist:
        result.checked += 1
        try:
            query = item.search_query()
            listings = search(query, limit)
            best = cheapest(listings)
            if best is None:
                logger.debug("No listings for '%s'.", query)
                continue

            if not qualifies(best.price_cents, item.target_price_cents, policy):
                logger.debug(
                    "'%s': cheapest %s above target %s.",
                    item.card_name,
                    cents_to_str(best.price_cents),
                    cents_to_str(item.target_price_cents),
                )
                continue

            previous = result.history.get(item.id)
            if previous and previous.last_notified_listing_id == best.external_id:
                logger.info(
                    "'%s': listing %s already notified; suppressing.",
                    item.card_name,
                    best.external_id,
                )
                continue

            logger.info(
                "'%s': listing %s at %s meets target %s; notifying %d subscription(s).",
                item.card_name,
                best.external_id,
                cents_to_str(best.price_cents),
                cents_to_str(item.target_price_cents),
                len(subscriptions),
            )
            failures = notify(subscriptions, build_payload(item, best)) if subscriptions else []
            result.errors.extend(failures)

            result.history[item.id] = NotificationRecord(
                watch_item_id=item.id,
                last_notified_listing_id=best.external_id,
                last_notified_at=now(),
            )
            result.notified += 1
            result.matches.append((item, best))
        except Exception as e:
            logger.exception("Error checking '%s': %s", item.card_name, e)
            result.errors.append(f"Error checking {item.card_name}: {e}")

    logger.info(
        "Pass complete: checked=%d notified=%d errors=%d",
        result.checked,
        result.notified,
        len(result.errors),
    )
    return result
