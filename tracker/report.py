# tracker/report.py
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .models import Listing, WatchItem, cents_to_str

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)


def _match_rows(matches: Sequence[Tuple[WatchItem, Listing]]) -> List[Dict[str, Any]]:
    rows = []
    for item, listing in matches:
        saving = item.target_price_cents - listing.price_cents
        rows.append(
            {
                "card_name": item.card_name,
                "scope": item.scope,
                "set_name": item.set_name or "",
                "collector_number": item.collector_number or "",
                "target_str": cents_to_str(item.target_price_cents),
                "price_str": cents_to_str(listing.price_cents),
                "saving_str": cents_to_str(saving) if saving > 0 else "",
                "title": listing.title,
                "url": listing.url,
                "image_url": listing.image_url,
            }
        )
    return rows


def build_subject(matches: Sequence[Tuple[WatchItem, Listing]]) -> str:
    if len(matches) == 1:
        item, listing = matches[0]
        return f"[MTG Sniper] {item.card_name} was sniped for {cents_to_str(listing.price_cents)}"
    return f"[MTG Sniper] {len(matches)} cards hit their target price"


def build_plaintext_report(matches: Sequence[Tuple[WatchItem, Listing]]) -> str:
    template = env.get_template("matches.txt")
    return template.render(matches=_match_rows(matches), count=len(matches))


def build_html_report(matches: Sequence[Tuple[WatchItem, Listing]]) -> str:
    template = env.get_template("matches.html")
    return template.render(
        title=build_subject(matches),
        matches=_match_rows(matches),
        count=len(matches),
    )
