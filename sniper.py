import os
import random
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from markets.ebay import EbayClient, MarketplaceAuthError
from tracker import emailer, storage
from tracker.logger import get_logger
from tracker.models import Listing, Subscription, WatchItem
from tracker.push import PushConfigError, PushSender, fan_out
from tracker.reconcile import MATCH_POLICY, SEARCH_LIMIT, run_pass, validate_policy
from tracker.report import build_html_report, build_plaintext_report, build_subject

logger = get_logger(__name__)

POLL_MINUTES = int(os.getenv("POLL_MINUTES", "15"))
MODE = os.getenv("MODE", "daemon").lower()  # "daemon", "once" or "serve"
WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
WEB_PORT = int(os.getenv("WEB_PORT", "8080"))

# Passes share the persisted notification history and must not overlap
_pass_lock = threading.Lock()


class PassAborted(Exception):
    """The whole reconciliation pass failed; nothing was notified."""


def send_digest(matches: Sequence[Tuple[WatchItem, Listing]]) -> Optional[str]:
    """E-mail a summary of new matches. Returns a diagnostic on failure."""
    recipients = emailer.get_recipients()
    if not matches or not recipients:
        return None
    try:
        sent = emailer.send_email(
            build_subject(matches),
            build_html_report(matches),
            build_plaintext_report(matches),
            recipients,
        )
    except Exception as e:
        logger.exception("Failed to send match digest: %s", e)
        return f"Email digest failed: {e}"
    if not sent:
        return "Email digest skipped: SMTP_HOST or EMAIL_FROM not set"
    return None


def _load_state():
    try:
        return storage.load_watchlist(), storage.load_subscriptions(), storage.load_history()
    except storage.StorageError as e:
        logger.error("Cannot load watch state: %s", e)
        raise PassAborted(f"Failed to load state: {e}") from e


def check_prices(
    market: Optional[EbayClient] = None,
    sender: Optional[PushSender] = None,
    *,
    policy: str = MATCH_POLICY,
    limit: int = SEARCH_LIMIT,
) -> Dict[str, Any]:
    """
    Run one reconciliation pass against persisted state.

    Raises PassAborted when state cannot be loaded or saved, push is not
    configured, or the marketplace refuses to issue a token.
    """
    policy = validate_policy(policy)

    if not _pass_lock.acquire(blocking=False):
        raise PassAborted("A price check is already running")
    try:
        watchlist, subscriptions, history = _load_state()

        if not watchlist:
            logger.info("Watchlist empty; nothing to check.")
            return {"checked": 0, "notified": 0, "message": "Watchlist empty"}

        # a recipient only counts when mail can actually be sent
        if not subscriptions and not (emailer.get_recipients() and emailer.is_configured()):
            logger.info("No subscriptions or e-mail recipients; skipping pass.")
            return {
                "checked": len(watchlist),
                "notified": 0,
                "message": "No subscriptions found",
            }

        if subscriptions and sender is None:
            try:
                sender = PushSender()
            except PushConfigError as e:
                raise PassAborted(str(e)) from e

        def notify(subs: Sequence[Subscription], payload: str) -> List[str]:
            return fan_out(sender, subs, payload)

        market = market or EbayClient()
        try:
            market.authenticate()
        except MarketplaceAuthError as e:
            raise PassAborted(f"Failed to get eBay token: {e}") from e

        result = run_pass(
            watchlist,
            subscriptions,
            history,
            market.search_fixed_price,
            notify,
            limit=limit,
            policy=policy,
        )

        try:
            storage.save_history(result.history)
            storage.set_last_check()
        except storage.StorageError as e:
            logger.error("Cannot persist notification history: %s", e)
            raise PassAborted(f"Failed to save state: {e}") from e

        digest_error = send_digest(result.matches)
        if digest_error:
            result.errors.append(digest_error)

        return result.summary()
    finally:
        _pass_lock.release()


def jitter_sleep_minutes(minutes: int) -> None:
    base = max(1, minutes)
    jitter = random.uniform(-0.1 * base, 0.1 * base)
    total = base + jitter
    logger.info("Sleeping %.1f minutes before next pass.", total)
    time.sleep(total * 60)


def run_once() -> int:
    storage.ensure_db()
    try:
        summary = check_prices()
    except PassAborted as e:
        logger.error("Price check aborted: %s", e)
        return 1
    logger.info("Price check summary: %s", summary)
    return 0


def run_daemon() -> None:
    logger.info("Starting daemon; checking prices every %d minutes.", POLL_MINUTES)
    storage.ensure_db()
    # one client for the daemon's lifetime so its token is reused
    market = EbayClient()

    while True:
        try:
            summary = check_prices(market)
            logger.info("Price check summary: %s", summary)
        except PassAborted as e:
            logger.error("Price check aborted: %s", e)
        except Exception as e:
            logger.exception("Unhandled error in daemon loop: %s", e)

        jitter_sleep_minutes(POLL_MINUTES)


def serve() -> None:
    from webapp import app

    storage.ensure_db()
    logger.info("Serving on %s:%d", WEB_HOST, WEB_PORT)
    app.run(host=WEB_HOST, port=WEB_PORT)


if __name__ == "__main__":
    try:
        validate_policy(MATCH_POLICY)
        if MODE == "once":
            raise SystemExit(run_once())
        elif MODE == "serve":
            serve()
        else:
            run_daemon()
    except SystemExit:
        raise
    except Exception as e:
        logger.exception("Fatal sniper error: %s", e)
        raise SystemExit(2)
