from typing import Any, Dict

from bs4 import BeautifulSoup

from .base import PageContext

OG_FIELDS = {
    "og:title": "name",
    "og:description": "description",
    "og:image": "image_url",
    "og:price:amount": "price",
    "product:price:amount": "price",
}


def og_tags(soup: BeautifulSoup) -> Dict[str, str]:
    """property= wins over name= when a page sets both."""
    tags: Dict[str, str] = {}
    for attr in ("property", "name"):
        for meta in soup.find_all("meta", attrs={attr: True, "content": True}):
            key = meta[attr].strip().lower()
            content = meta["content"].strip()
            if content and (key.startswith("og:") or key.startswith("product:")):
                tags.setdefault(key, content)
    return tags


def extract_opengraph(page: PageContext) -> Dict[str, Any]:
    tags = og_tags(page.soup)
    out: Dict[str, Any] = {}
    for key, field in OG_FIELDS.items():
        if tags.get(key) and field not in out:
            out[field] = tags[key]
    return out
