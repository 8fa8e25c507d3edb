"""
Flask HTTP layer: card search, watchlist management, push subscriptions
and the cron-triggered price check.
"""
import hmac
import os

from flask import Flask, jsonify, request

from markets import scryfall
from markets.ebay import EbayClient, MarketplaceError
from sniper import PassAborted, check_prices
from tracker import storage
from tracker.logger import get_logger
from tracker.market import flag_deals, get_market_data
from tracker.models import Subscription, ValidationError, new_watch_item
from tracker.reconcile import MATCH_POLICY

logger = get_logger(__name__)

app = Flask(__name__)
app.config["CRON_SECRET"] = os.getenv("CRON_SECRET", "").strip()
app.config["VAPID_PUBLIC_KEY"] = os.getenv("VAPID_PUBLIC_KEY", "").strip()
app.config["CATALOG"] = scryfall
app.config["MATCH_POLICY"] = MATCH_POLICY


def get_market() -> EbayClient:
    # built lazily so the token cache lives as long as the app
    if app.config.get("MARKET_CLIENT") is None:
        app.config["MARKET_CLIENT"] = EbayClient()
    return app.config["MARKET_CLIENT"]


def _error(error: str, status: int, **extra):
    body = {"success": False, "error": error}
    body.update(extra)
    return jsonify(body), status


@app.errorhandler(storage.StorageError)
def handle_storage_error(e):
    logger.error("Storage error on %s: %s", request.path, e)
    return _error("Storage unavailable", 500, message=str(e))


@app.get("/api/status")
def status():
    connected = storage.ping()
    last_check = storage.get_last_check() if connected else None
    return jsonify(
        {
            "success": True,
            "database": "connected" if connected else "disconnected",
            "lastCheck": last_check,
        }
    )


@app.get("/api/cards/search")
def search_cards():
    query = (request.args.get("q") or "").strip()
    if not query:
        return _error("Query parameter 'q' is required", 400)
    try:
        cards = app.config["CATALOG"].search_cards(query)
    except scryfall.CatalogError as e:
        return _error(str(e), 502)
    return jsonify({"success": True, "cards": [scryfall.to_card(c).to_dict() for c in cards]})


@app.get("/api/cards/prints")
def card_prints():
    name = (request.args.get("name") or "").strip()
    if not name:
        return _error("Query parameter 'name' is required", 400)
    try:
        result = app.config["CATALOG"].fetch_card_prints(name)
    except scryfall.CardNotFound as e:
        return _error(str(e), 404)
    except scryfall.CatalogError as e:
        return _error(str(e), 502)
    return jsonify(
        {
            "success": True,
            "name": result["name"],
            "oracleId": result["oracle_id"],
            "prints": [p.to_dict() for p in result["prints"]],
        }
    )


@app.get("/api/cards/<card_id>/prices")
def card_prices(card_id):
    try:
        prices = app.config["CATALOG"].get_card_prices(card_id)
    except scryfall.CardNotFound as e:
        return _error(str(e), 404)
    except scryfall.CatalogError as e:
        return _error(str(e), 502)
    return jsonify({"success": True, **prices})


@app.get("/api/market")
def market_data():
    name = (request.args.get("name") or "").strip()
    if not name:
        return _error("Query parameter 'name' is required", 400)
    try:
        data = get_market_data(name, app.config["CATALOG"], get_market())
    except scryfall.CardNotFound as e:
        return _error(str(e), 404)
    except (scryfall.CatalogError, MarketplaceError) as e:
        return _error(str(e), 502)
    return jsonify({"success": True, **data})


@app.get("/api/listings")
def listings():
    query = (request.args.get("q") or "").strip()
    if not query:
        return _error("Query parameter 'q' is required", 400)
    try:
        found = get_market().search_listings(
            query,
            set_name=request.args.get("setName"),
            collector_number=request.args.get("collectorNumber"),
        )
    except MarketplaceError as e:
        return _error(str(e), 502)
    return jsonify({"success": True, "listings": flag_deals(found)})


@app.get("/api/watchlist")
def list_watchlist():
    items = storage.load_watchlist()
    return jsonify({"success": True, "items": [it.to_dict() for it in items]})


@app.post("/api/watchlist")
def create_watch_item():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return _error("JSON body is required", 400)
    try:
        item = new_watch_item(
            body.get("cardName"),
            body.get("targetPrice"),
            body.get("scope", "any"),
            body.get("setName"),
            body.get("collectorNumber"),
            body.get("cardId"),
        )
    except ValidationError as e:
        return _error(str(e), 400)
    storage.add_watch_item(item)
    return jsonify({"success": True, "item": item.to_dict()})


@app.delete("/api/watchlist")
@app.delete("/api/watchlist/<item_id>")
def delete_watch_item(item_id=None):
    item_id = item_id or request.args.get("id")
    if not item_id:
        return _error("ID parameter is required", 400)
    if not storage.delete_watch_item(item_id):
        return _error("Item not found", 404)
    return jsonify({"success": True, "message": "Item removed successfully"})


@app.post("/api/subscribe")
def subscribe():
    body = request.get_json(silent=True)
    if isinstance(body, dict) and "subscription" in body:
        body = body["subscription"]
    try:
        sub = Subscription.from_dict(body)
    except ValidationError as e:
        return _error(str(e), 400)
    storage.upsert_subscription(sub)
    logger.info("Registered push subscription %s", sub.endpoint)
    return jsonify({"success": True})


@app.get("/api/push/public-key")
def push_public_key():
    key = app.config["VAPID_PUBLIC_KEY"]
    if not key:
        return _error("VAPID keys not configured", 500)
    return jsonify({"publicKey": key})


def _authorized() -> bool:
    secret = app.config["CRON_SECRET"]
    if not secret:
        return False
    supplied = request.args.get("key", "")
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        supplied = supplied or header[len("Bearer "):]
    return hmac.compare_digest(supplied.encode(), secret.encode())


@app.route("/api/cron/check-prices", methods=["GET", "POST"])
def cron_check_prices():
    if not _authorized():
        logger.warning("Rejected unauthorized price check from %s", request.remote_addr)
        return jsonify({"error": "Unauthorized"}), 401
    try:
        summary = check_prices(
            get_market(),
            app.config.get("PUSH_SENDER"),
            policy=app.config["MATCH_POLICY"],
        )
    except (PassAborted, ValueError) as e:
        logger.error("Price check aborted: %s", e)
        return jsonify({"error": str(e)}), 500
    return jsonify(summary)
