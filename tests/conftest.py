import os

os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LOG_TO_STDOUT", "false")

import pytest

from tracker import storage
from tracker.models import Listing, Subscription, new_watch_item


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "DB_PATH", str(tmp_path / "sniper.sqlite3"))
    storage.ensure_db()
    return storage


@pytest.fixture
def bolt():
    return new_watch_item("Lightning Bolt", "5.00", "any")


@pytest.fixture
def subs():
    return [
        Subscription(endpoint="https://push.example/one", p256dh="p1", auth="a1"),
        Subscription(endpoint="https://push.example/two", p256dh="p2", auth="a2"),
    ]


def listing(listing_id, price_cents, title=None):
    return Listing(
        external_id=listing_id,
        title=title or f"Lightning Bolt {listing_id}",
        price_cents=price_cents,
        url=f"https://www.ebay.com/itm/{listing_id}",
    )


@pytest.fixture
def make_listing():
    return listing
