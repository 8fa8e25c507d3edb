from unittest.mock import MagicMock, patch

import pytest

import webapp
from markets import scryfall
from tracker.models import Card, CardPrint


@pytest.fixture
def client(db):
    market = MagicMock()
    catalog = MagicMock()
    webapp.app.config.update(
        TESTING=True,
        CRON_SECRET="s3cret",
        VAPID_PUBLIC_KEY="pub",
        MARKET_CLIENT=market,
        CATALOG=catalog,
        PUSH_SENDER=MagicMock(),
        MATCH_POLICY="inclusive",
    )
    with webapp.app.test_client() as c:
        c.market = market
        c.catalog = catalog
        yield c


def _add(client, **body):
    return client.post("/api/watchlist", json=body)


def test_watchlist_crud(client):
    resp = _add(client, cardName="Lightning Bolt", targetPrice=5, scope="any")
    assert resp.status_code == 200
    item = resp.get_json()["item"]
    assert item["cardName"] == "Lightning Bolt"
    assert item["targetPrice"] == 5.0

    listed = client.get("/api/watchlist").get_json()["items"]
    assert [i["id"] for i in listed] == [item["id"]]

    assert client.delete(f"/api/watchlist?id={item['id']}").status_code == 200
    assert client.delete(f"/api/watchlist/{item['id']}").status_code == 404
    assert client.delete("/api/watchlist").status_code == 400
    assert client.get("/api/watchlist").get_json()["items"] == []


def test_specific_scope_without_print_details_is_rejected(client):
    resp = _add(client, cardName="Lightning Bolt", targetPrice=3, scope="specific", setName="Magic 2010")
    assert resp.status_code == 400
    assert "collector number" in resp.get_json()["error"]
    assert client.get("/api/watchlist").get_json()["items"] == []


def test_invalid_target_price_is_rejected(client):
    assert _add(client, cardName="Lightning Bolt", targetPrice=0).status_code == 400
    resp = _add(client, cardName="Lightning Bolt", targetPrice="1e30")
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False
    assert client.post("/api/watchlist", data="nope").status_code == 400


def test_subscribe_upserts(client, db):
    sub = {"endpoint": "https://push.example/a", "keys": {"p256dh": "k", "auth": "a"}}
    assert client.post("/api/subscribe", json=sub).status_code == 200
    assert client.post("/api/subscribe", json={"subscription": sub}).status_code == 200
    assert len(db.load_subscriptions()) == 1
    assert client.post("/api/subscribe", json={"endpoint": "x"}).status_code == 400


def test_cron_requires_secret(client):
    with patch("webapp.check_prices") as check:
        assert client.get("/api/cron/check-prices").status_code == 401
        assert client.get("/api/cron/check-prices?key=wrong").status_code == 401
        check.assert_not_called()


def test_cron_accepts_query_key_and_bearer(client):
    with patch("webapp.check_prices", return_value={"checked": 2, "notified": 1}) as check:
        resp = client.get("/api/cron/check-prices?key=s3cret")
        assert resp.status_code == 200
        assert resp.get_json() == {"checked": 2, "notified": 1}

        resp = client.post("/api/cron/check-prices", headers={"Authorization": "Bearer s3cret"})
        assert resp.status_code == 200
        assert check.call_count == 2


def test_cron_unset_secret_rejects_everything(client):
    webapp.app.config["CRON_SECRET"] = ""
    with patch("webapp.check_prices") as check:
        assert client.get("/api/cron/check-prices?key=").status_code == 401
        check.assert_not_called()


def test_cron_fatal_error(client):
    with patch("webapp.check_prices", side_effect=webapp.PassAborted("Failed to get eBay token: 401")):
        resp = client.get("/api/cron/check-prices?key=s3cret")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Failed to get eBay token: 401"}


def test_status(client, db):
    db.set_last_check("2024-05-01T00:00:00+00:00")
    body = client.get("/api/status").get_json()
    assert body == {"success": True, "database": "connected", "lastCheck": "2024-05-01T00:00:00+00:00"}


def test_storage_error_becomes_500(client):
    with patch("webapp.storage.load_watchlist", side_effect=webapp.storage.StorageError("locked")):
        resp = client.get("/api/watchlist")
    assert resp.status_code == 500
    assert resp.get_json() == {"success": False, "error": "Storage unavailable", "message": "locked"}


def test_card_prints(client):
    client.catalog.fetch_card_prints.return_value = {
        "name": "Lightning Bolt",
        "oracle_id": "o1",
        "prints": [CardPrint("p1", "Magic 2010", "146", usd_cents=150)],
    }
    body = client.get("/api/cards/prints", query_string={"name": "Lightning Bolt"}).get_json()
    assert body["oracleId"] == "o1"
    assert body["prints"][0]["marketPrice"] == 1.5

    client.catalog.fetch_card_prints.side_effect = scryfall.CardNotFound("Card not found: x")
    assert client.get("/api/cards/prints?name=x").status_code == 404
    assert client.get("/api/cards/prints").status_code == 400


def test_market_flags_deals(client, make_listing):
    client.catalog.fetch_card_by_name.return_value = Card("c1", "Lightning Bolt", "Magic 2010", usd_cents=200)
    client.market.search_listings.return_value = [
        make_listing("A", 100),
        make_listing("B", 200),
        make_listing("C", 210),
    ]

    body = client.get("/api/market", query_string={"name": "Lightning Bolt"}).get_json()

    assert body["card"]["name"] == "Lightning Bolt"
    assert [l["isDeal"] for l in body["listings"]] == [True, False, False]


def test_push_public_key(client):
    assert client.get("/api/push/public-key").get_json() == {"publicKey": "pub"}


def test_card_prices(client):
    client.catalog.get_card_prices.return_value = {
        "usd": "1.50",
        "usdFoil": "4.00",
        "tcgplayer": {"url": "https://tcg/123", "updatedAt": "2009-07-17"},
    }
    body = client.get("/api/cards/p1/prices").get_json()
    assert body == {
        "success": True,
        "usd": "1.50",
        "usdFoil": "4.00",
        "tcgplayer": {"url": "https://tcg/123", "updatedAt": "2009-07-17"},
    }
    client.catalog.get_card_prices.assert_called_once_with("p1")

    client.catalog.get_card_prices.side_effect = scryfall.CardNotFound("Card not found: nope")
    resp = client.get("/api/cards/nope/prices")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Card not found: nope"


def test_cron_passes_configured_policy(client):
    with patch("webapp.check_prices", return_value={"checked": 0, "notified": 0}) as check:
        client.get("/api/cron/check-prices?key=s3cret")
    assert check.call_args.kwargs["policy"] == "inclusive"


def test_cron_bad_match_policy_is_json_500(client):
    webapp.app.config["MATCH_POLICY"] = "below"
    resp = client.get("/api/cron/check-prices?key=s3cret")
    assert resp.status_code == 500
    assert "Unknown match policy" in resp.get_json()["error"]
