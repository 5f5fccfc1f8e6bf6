import re
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlsplit

from bs4 import BeautifulSoup

from ..normalizer import collapse_ws
from .base import PageContext

GENERIC_CRUMBS = {"home", "menu", "products", "product", "shop", "store", "all", "all products"}

CATEGORY_VOCABULARY = {
    "flower",
    "vapes",
    "vaporizers",
    "edibles",
    "prerolls",
    "pre-rolls",
    "concentrates",
    "drinks",
    "beverages",
    "syrup",
    "moon-rocks",
    "tinctures",
    "topicals",
    "accessories",
    "bundles",
    "chocolates",
    "gummies",
    "cbd",
}

DESCRIPTION_MIN_CHARS = 50

_URL_CATEGORY = re.compile(r"/(?:menu|category|categories|products?)/([^/]+)", re.I)
_CLASS_BREADCRUMB = re.compile(r"breadcrumb", re.I)
_CLASS_ACTIVE = re.compile(r"\b(?:active|current|selected)\b", re.I)
_CLASS_DESCRIPTION = (
    re.compile(r"product-description", re.I),
    re.compile(r"description", re.I),
    re.compile(r"product-details", re.I),
)


def _title(segment: str) -> str:
    return unquote(segment).replace("-", " ").replace("_", " ").strip().title()


def category_from_breadcrumbs(soup: BeautifulSoup) -> Optional[str]:
    for crumbs in soup.find_all(class_=_CLASS_BREADCRUMB):
        for a in crumbs.find_all("a"):
            text = collapse_ws(a.get_text(" "))
            if text and text.lower() not in GENERIC_CRUMBS:
                return text
    return None


def category_from_url(url: str) -> Optional[str]:
    m = _URL_CATEGORY.search(urlsplit(url).path)
    if not m:
        return None
    segment = unquote(m.group(1)).lower()
    if segment in CATEGORY_VOCABULARY:
        return _title(segment)
    return None


def category_from_meta(soup: BeautifulSoup) -> Optional[str]:
    meta = soup.find("meta", attrs={"name": re.compile(r"^category$", re.I), "content": True})
    if meta and meta["content"].strip():
        return meta["content"].strip()
    return None


def category_from_active_nav(soup: BeautifulSoup) -> Optional[str]:
    for el in soup.find_all(class_=_CLASS_ACTIVE):
        # Own text only; a highlighted container full of links is not a label.
        text = collapse_ws("".join(el.find_all(string=True, recursive=False)))
        if not text and el.name == "a":
            text = collapse_ws(el.get_text(" "))
        if 2 < len(text) < 30:
            return text
    return None


def extract_category(page: PageContext) -> Dict[str, Any]:
    category = (
        category_from_breadcrumbs(page.soup)
        or category_from_url(page.url)
        or category_from_meta(page.soup)
        or category_from_active_nav(page.soup)
    )
    return {"category": category} if category else {}


def extract_description(page: PageContext) -> Dict[str, Any]:
    for pattern in _CLASS_DESCRIPTION:
        for el in page.soup.find_all(["div", "p", "section"], class_=pattern):
            text = collapse_ws(el.get_text(" "))
            if len(text) > DESCRIPTION_MIN_CHARS:
                return {"description": text}
    return {}
