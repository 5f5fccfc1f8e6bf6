import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from bs4 import BeautifulSoup

# Every field a strategy may fill. Lists are replaced wholesale, never merged.
PRODUCT_FIELDS: Tuple[str, ...] = (
    "name",
    "brand",
    "category",
    "description",
    "price",
    "thc",
    "cbd",
    "tags",
    "effects",
    "flavors",
    "image_url",
    "in_stock",
)


@dataclass
class PageContext:
    html: str
    url: str
    soup: BeautifulSoup


# A strategy looks at one page and returns whatever fields it can vouch for.
Strategy = Callable[[PageContext], Dict[str, Any]]


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def safe_json_loads(text: Optional[str]):
    if not text:
        return None
    text = text.strip()
    # Some CMSs wrap ld+json in HTML comments or CDATA.
    for prefix, suffix in (("<!--", "-->"), ("<![CDATA[", "]]>"), ("//<![CDATA[", "//]]>")):
        if text.startswith(prefix) and text.endswith(suffix):
            text = text[len(prefix): -len(suffix)].strip()
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return None


def first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def scalar_text(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return None


def named_text(value: Any) -> Optional[str]:
    """Brand-style values: plain string, or an object carrying `name`."""
    value = first(value)
    if isinstance(value, dict):
        return scalar_text(value.get("name"))
    return scalar_text(value)


def joined_text(value: Any) -> Optional[str]:
    """Category-style values: a string, or a list joined with ', '."""
    if isinstance(value, list):
        parts = [p for p in (named_text(v) for v in value) if p]
        return ", ".join(parts) or None
    return named_text(value)


def image_text(value: Any) -> Optional[str]:
    """Image may be a URL string, a list of either form, or an ImageObject."""
    value = first(value)
    if isinstance(value, dict):
        return scalar_text(value.get("url") or value.get("contentUrl") or value.get("src"))
    return scalar_text(value)


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "yes", "1", "instock", "in_stock", "in stock", "available"):
            return True
        if v in ("false", "no", "0", "outofstock", "out_of_stock", "out of stock", "soldout", "sold out"):
            return False
    return None
