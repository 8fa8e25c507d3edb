# tracker/storage.py
import json
import os
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from .logger import get_logger
from .models import (
    NotificationRecord,
    Subscription,
    WatchItem,
    now_utc_iso,
)

logger = get_logger(__name__)

DB_PATH = os.getenv("DB_PATH", "/data/mtg_sniper.sqlite3")

WATCHLIST_KEY = "watchlist"
SUBSCRIPTIONS_KEY = "subscriptions"
HISTORY_KEY = "notification_history"
LAST_CHECK_KEY = "last_price_check"


class StorageError(Exception):
    """The document store could not be read or written."""


def _connect():
    directory = os.path.dirname(DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)
    return sqlite3.connect(DB_PATH)


def ensure_db():
    try:
        with _connect() as con:
            cur = con.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT
                )
            """
            )
            con.commit()
    except (sqlite3.Error, OSError) as e:
        raise StorageError(f"Failed to initialize database at {DB_PATH}: {e}") from e


def get_document(key: str, default: Any = None) -> Any:
    """
    Return the JSON value stored under key, or default when absent.
    """
    ensure_db()
    try:
        with _connect() as con:
            cur = con.cursor()
            cur.execute("SELECT value FROM documents WHERE key=?", (key,))
            row = cur.fetchone()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to read '{key}': {e}") from e

    if row is None or row[0] is None:
        return default
    try:
        return json.loads(row[0])
    except ValueError as e:
        raise StorageError(f"Corrupt document '{key}': {e}") from e


def put_document(key: str, value: Any) -> None:
    ensure_db()
    try:
        payload = json.dumps(value)
        with _connect() as con:
            cur = con.cursor()
            cur.execute(
                """
                INSERT INTO documents (key, value, updated_at)
                VALUES (?,?,?)
                ON CONFLICT(key) DO UPDATE SET
                    value=excluded.value,
                    updated_at=excluded.updated_at
            """,
                (key, payload, now_utc_iso()),
            )
            con.commit()
    except (sqlite3.Error, TypeError, ValueError) as e:
        raise StorageError(f"Failed to write '{key}': {e}") from e


def update_document(key: str, default: Any, change: Callable[[Any], Any]) -> Any:
    """
    Read, change and write one document inside a single IMMEDIATE
    transaction so concurrent writers cannot drop each other's updates.
    change receives the current value and returns the new one, or None
    to leave the document untouched. Returns what change returned.
    """
    ensure_db()
    try:
        con = _connect()
    except (sqlite3.Error, OSError) as e:
        raise StorageError(f"Failed to open database for '{key}': {e}") from e
    con.isolation_level = None
    try:
        con.execute("BEGIN IMMEDIATE")
        row = con.execute("SELECT value FROM documents WHERE key=?", (key,)).fetchone()
        current = default if row is None or row[0] is None else json.loads(row[0])
        updated = change(current)
        if updated is not None:
            con.execute(
                """
                INSERT INTO documents (key, value, updated_at)
                VALUES (?,?,?)
                ON CONFLICT(key) DO UPDATE SET
                    value=excluded.value,
                    updated_at=excluded.updated_at
            """,
                (key, json.dumps(updated), now_utc_iso()),
            )
        con.execute("COMMIT")
        return updated
    except (sqlite3.Error, TypeError, ValueError) as e:
        if con.in_transaction:
            con.execute("ROLLBACK")
        raise StorageError(f"Failed to update '{key}': {e}") from e
    finally:
        con.close()


def ping() -> bool:
    try:
        get_document(WATCHLIST_KEY)
        return True
    except StorageError as e:
        logger.warning("Database check failed: %s", e)
        return False


# --- watchlist ---

def load_watchlist() -> List[WatchItem]:
    raw = get_document(WATCHLIST_KEY, [])
    items: List[WatchItem] = []
    for entry in raw:
        try:
            items.append(WatchItem.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Skipping invalid watchlist entry %s: %s", entry, e)
    return items


def save_watchlist(items: List[WatchItem]) -> None:
    put_document(WATCHLIST_KEY, [it.to_dict() for it in items])


def add_watch_item(item: WatchItem) -> WatchItem:
    update_document(WATCHLIST_KEY, [], lambda raw: raw + [item.to_dict()])
    logger.info("Added watch item %s (%s).", item.id, item.card_name)
    return item


def delete_watch_item(item_id: str) -> bool:
    """Remove an item by id. Returns False when no such item exists."""
    def drop(raw):
        remaining = [entry for entry in raw if not (isinstance(entry, dict) and str(entry.get("id")) == item_id)]
        return remaining if len(remaining) < len(raw) else None

    if update_document(WATCHLIST_KEY, [], drop) is None:
        return False
    logger.info("Removed watch item %s.", item_id)
    return True


# --- subscriptions ---

def load_subscriptions() -> List[Subscription]:
    raw = get_document(SUBSCRIPTIONS_KEY, [])
    subs: List[Subscription] = []
    for entry in raw:
        try:
            subs.append(Subscription.from_dict(entry))
        except ValueError as e:
            logger.error("Skipping invalid subscription entry: %s", e)
    return subs


def upsert_subscription(sub: Subscription) -> Subscription:
    sub.created_at = now_utc_iso()
    def replace(raw):
        # one subscription per endpoint; re-subscribing replaces the keys in place
        for i, entry in enumerate(raw):
            if isinstance(entry, dict) and entry.get("endpoint") == sub.endpoint:
                raw[i] = sub.to_dict()
                return raw
        return raw + [sub.to_dict()]

    update_document(SUBSCRIPTIONS_KEY, [], replace)
    return sub


# --- notification history ---

def load_history() -> Dict[str, NotificationRecord]:
    raw = get_document(HISTORY_KEY, {})
    out: Dict[str, NotificationRecord] = {}
    for item_id, entry in raw.items():
        try:
            out[item_id] = NotificationRecord.from_dict(entry)
        except (KeyError, TypeError) as e:
            logger.error("Skipping invalid history entry for %s: %s", item_id, e)
    return out


def save_history(history: Dict[str, NotificationRecord]) -> None:
    put_document(HISTORY_KEY, {k: v.to_dict() for k, v in history.items()})


def set_last_check(ts: Optional[str] = None) -> str:
    ts = ts or now_utc_iso()
    put_document(LAST_CHECK_KEY, ts)
    return ts


def get_last_check() -> Optional[str]:
    return get_document(LAST_CHECK_KEY)
