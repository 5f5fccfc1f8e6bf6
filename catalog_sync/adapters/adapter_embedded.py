"""
Product fields buried in SPA state blobs (Redux / Next.js / Apollo style) and
in JSON-valued data-* attributes.
"""
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from .base import PageContext, coerce_bool, first, image_text, joined_text, named_text, safe_json_loads, scalar_text

logger = logging.getLogger(__name__)

MAX_DEPTH = 10
MAX_NODES = 5000
MAX_DATA_ATTRS = 200

STATE_ASSIGNMENT = re.compile(
    r"(?:window\.)?__(?:INITIAL_STATE|PRELOADED_STATE|NEXT_DATA|APOLLO_STATE|NUXT)__\s*=\s*",
)

_decoder = json.JSONDecoder()


def _potency(value: Any) -> Optional[str]:
    # Menus ship THC as 22.5, "22.5%", {"formatted": "22.5%"} or {"range": [20, 25]}.
    if isinstance(value, dict):
        for key in ("formatted", "value", "amount"):
            if value.get(key) is not None:
                return scalar_text(value[key])
        rng = value.get("range")
        if isinstance(rng, list) and rng:
            return scalar_text(rng[0])
        return None
    return scalar_text(first(value))


def _text_list(value: Any) -> Optional[List[str]]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return None
    out = [t for t in (named_text(v) for v in value) if t]
    return out or None


# field -> (candidate keys, coercion)
FIELD_KEYS: Tuple[Tuple[str, Tuple[str, ...], Callable[[Any], Any]], ...] = (
    ("name", ("name", "title", "productName"), lambda v: scalar_text(first(v))),
    ("brand", ("brand",), named_text),
    ("category", ("category",), joined_text),
    ("description", ("description",), lambda v: scalar_text(first(v))),
    ("price", ("price",), lambda v: scalar_text(first(v))),
    ("thc", ("thc",), _potency),
    ("cbd", ("cbd",), _potency),
    ("image_url", ("image", "imageUrl"), image_text),
    ("in_stock", ("inStock", "in_stock"), coerce_bool),
    ("tags", ("tags",), _text_list),
    ("effects", ("effects",), _text_list),
    ("flavors", ("flavors",), _text_list),
)


def state_blobs(soup: BeautifulSoup) -> List[Any]:
    blobs: List[Any] = []
    for script in soup.find_all("script"):
        text = script.string or ""
        if not text:
            continue
        if script.get("id") == "__NEXT_DATA__":
            data = safe_json_loads(text)
            if data is not None:
                blobs.append(data)
            continue
        for m in STATE_ASSIGNMENT.finditer(text):
            start = text.find("{", m.end())
            if start == -1 or text[m.end():start].strip():
                continue
            try:
                data, _ = _decoder.raw_decode(text, start)
            except ValueError:
                # JS object literal rather than JSON (undefined, trailing commas...).
                logger.debug("[EXTRACT] state blob at offset %d is not JSON", start)
                continue
            blobs.append(data)
    return blobs


def data_attribute_blobs(soup: BeautifulSoup) -> List[Any]:
    blobs: List[Any] = []
    for tag in soup.find_all(True):
        for attr, value in tag.attrs.items():
            if not attr.startswith("data-") or not isinstance(value, str):
                continue
            value = value.strip()
            if not value.startswith("{"):
                continue
            data = safe_json_loads(value)
            if isinstance(data, dict):
                blobs.append(data)
                if len(blobs) >= MAX_DATA_ATTRS:
                    return blobs
    return blobs


def find_product_fields(data: Any, out: Optional[Dict[str, Any]] = None, max_depth: int = MAX_DEPTH,
                        max_nodes: int = MAX_NODES) -> Dict[str, Any]:
    """
    Pre-order walk; the first match per field wins. Bounded by depth and by the
    number of containers visited so a huge state blob cannot stall a run.
    """
    out = {} if out is None else out
    budget = [max_nodes]

    def walk(node: Any, depth: int):
        if depth > max_depth or budget[0] <= 0:
            return
        if isinstance(node, dict):
            budget[0] -= 1
            for field, keys, coerce in FIELD_KEYS:
                if field in out:
                    continue
                for key in keys:
                    if key in node:
                        value = coerce(node[key])
                        if value is not None:
                            out[field] = value
                            break
            children = node.values()
        elif isinstance(node, list):
            budget[0] -= 1
            children = node
        else:
            return
        for child in children:
            if isinstance(child, (dict, list)):
                walk(child, depth + 1)

    walk(data, 0)
    return out


def extract_embedded(page: PageContext) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for blob in state_blobs(page.soup) + data_attribute_blobs(page.soup):
        find_product_fields(blob, out)
    return out
