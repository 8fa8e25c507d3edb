from unittest.mock import MagicMock, patch

import pytest

import sniper
from markets.ebay import MarketplaceAuthError
from tracker.models import NotificationRecord, new_watch_item


class FakeMarket:
    def __init__(self, listings=None, auth_error=None):
        self.listings = listings or []
        self.auth_error = auth_error
        self.searches = 0

    def authenticate(self):
        if self.auth_error:
            raise self.auth_error
        return "token"

    def search_fixed_price(self, query, limit):
        self.searches += 1
        return list(self.listings)


@pytest.fixture
def sender():
    return MagicMock()


@pytest.fixture
def watched(db, subs):
    item = db.add_watch_item(new_watch_item("Lightning Bolt", "5.00"))
    for s in subs:
        db.upsert_subscription(s)
    return item


def test_empty_watchlist(db, sender):
    assert sniper.check_prices(FakeMarket(), sender) == {
        "checked": 0,
        "notified": 0,
        "message": "Watchlist empty",
    }


def test_no_subscriptions_skips_pass(db, sender):
    db.add_watch_item(new_watch_item("Lightning Bolt", "5.00"))
    market = FakeMarket()
    with patch("sniper.emailer.get_recipients", return_value=[]):
        summary = sniper.check_prices(market, sender)
    assert summary["message"] == "No subscriptions found"
    assert market.searches == 0


def test_unsendable_email_does_not_count_as_a_channel(db, sender, make_listing):
    db.add_watch_item(new_watch_item("Lightning Bolt", "5.00"))
    market = FakeMarket([make_listing("A", 100)])
    with patch("sniper.emailer.get_recipients", return_value=["me@example.com"]), \
            patch("sniper.emailer.is_configured", return_value=False):
        summary = sniper.check_prices(market, sender)

    assert summary["message"] == "No subscriptions found"
    assert market.searches == 0
    assert db.load_history() == {}


def test_email_only_pass_records_history(db, sender, make_listing):
    item = db.add_watch_item(new_watch_item("Lightning Bolt", "5.00"))
    with patch("sniper.emailer.get_recipients", return_value=["me@example.com"]), \
            patch("sniper.emailer.is_configured", return_value=True), \
            patch("sniper.emailer.send_email", return_value=True) as send:
        summary = sniper.check_prices(FakeMarket([make_listing("A", 100)]), sender)

    assert summary == {"checked": 1, "notified": 1}
    assert send.call_count == 1
    sender.send.assert_not_called()
    assert db.load_history()[item.id].last_notified_listing_id == "A"


def test_pass_notifies_and_persists_history(watched, db, sender, make_listing):
    market = FakeMarket([make_listing("A", 450), make_listing("B", 600)])

    summary = sniper.check_prices(market, sender)

    assert summary == {"checked": 1, "notified": 1}
    assert sender.send.call_count == 2
    assert db.load_history()[watched.id].last_notified_listing_id == "A"
    assert db.get_last_check()

    # unchanged listings: suppressed on the next pass
    again = sniper.check_prices(market, sender)
    assert again == {"checked": 1, "notified": 0}
    assert sender.send.call_count == 2


def test_new_listing_id_notifies_again(watched, db, sender, make_listing):
    db.save_history({watched.id: NotificationRecord(watched.id, "A", "T0")})

    summary = sniper.check_prices(FakeMarket([make_listing("C", 300)]), sender)

    assert summary["notified"] == 1
    assert db.load_history()[watched.id].last_notified_listing_id == "C"


def test_auth_failure_aborts_without_notifying(watched, db, sender, make_listing):
    market = FakeMarket([make_listing("A", 100)], auth_error=MarketplaceAuthError("invalid_client"))

    with pytest.raises(sniper.PassAborted, match="eBay token"):
        sniper.check_prices(market, sender)

    assert market.searches == 0
    sender.send.assert_not_called()
    assert db.load_history() == {}


def test_storage_failure_aborts(db, sender):
    with patch("sniper.storage.load_watchlist", side_effect=db.StorageError("disk")):
        with pytest.raises(sniper.PassAborted, match="load state"):
            sniper.check_prices(FakeMarket(), sender)


def test_history_written_once_per_pass(watched, db, sender, make_listing):
    spell = db.add_watch_item(new_watch_item("Counterspell", "5.00"))
    market = FakeMarket([make_listing("A", 100)])

    with patch("sniper.storage.save_history", wraps=db.save_history) as save:
        summary = sniper.check_prices(market, sender)

    assert summary["notified"] == 2
    assert save.call_count == 1
    assert set(save.call_args.args[0]) == {watched.id, spell.id}


def test_missing_vapid_keys_abort(watched, db):
    with patch("sniper.PushSender", side_effect=sniper.PushConfigError("no keys")):
        with pytest.raises(sniper.PassAborted, match="no keys"):
            sniper.check_prices(FakeMarket())


def test_overlapping_pass_is_refused(watched, sender):
    assert sniper._pass_lock.acquire(blocking=False)
    try:
        with pytest.raises(sniper.PassAborted, match="already running"):
            sniper.check_prices(FakeMarket(), sender)
    finally:
        sniper._pass_lock.release()


def test_digest_email_failure_is_reported(watched, db, sender, make_listing):
    with patch("sniper.emailer.get_recipients", return_value=["me@example.com"]), \
            patch("sniper.emailer.send_email", side_effect=OSError("smtp down")) as send:
        summary = sniper.check_prices(FakeMarket([make_listing("A", 100)]), sender)

    assert send.call_count == 1
    subject = send.call_args.args[0]
    assert subject == "[MTG Sniper] Lightning Bolt was sniped for $1.00"
    assert summary["notified"] == 1
    assert summary["errors"] == ["Email digest failed: smtp down"]


def test_run_once_exit_codes(db):
    with patch("sniper.check_prices", return_value={"checked": 0, "notified": 0}):
        assert sniper.run_once() == 0
    with patch("sniper.check_prices", side_effect=sniper.PassAborted("boom")):
        assert sniper.run_once() == 1


def test_skipped_digest_is_reported(bolt, make_listing):
    with patch("sniper.emailer.get_recipients", return_value=["me@example.com"]), \
            patch("sniper.emailer.send_email", return_value=False):
        error = sniper.send_digest([(bolt, make_listing("A", 100))])
    assert error == "Email digest skipped: SMTP_HOST or EMAIL_FROM not set"
