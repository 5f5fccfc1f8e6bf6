from typing import Any, Dict, Iterator, List, Optional

from bs4 import BeautifulSoup

from .base import PageContext, first, image_text, is_empty, joined_text, named_text, safe_json_loads, scalar_text


def _is_product(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    t = node.get("@type")
    return t == "Product" or (isinstance(t, list) and "Product" in t)


def _candidates(data: Any) -> Iterator[Dict[str, Any]]:
    # Root object, a top-level list, or an @graph container.
    if isinstance(data, list):
        for node in data:
            yield from _candidates(node)
        return
    if not isinstance(data, dict):
        return
    if _is_product(data):
        yield data
    graph = data.get("@graph")
    if isinstance(graph, list):
        for node in graph:
            if _is_product(node):
                yield node


def product_nodes(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    nodes = []
    for tag in soup.find_all("script", type=lambda t: t and "ld+json" in t.lower()):
        data = safe_json_loads(tag.string or tag.get_text())
        if data is None:
            continue
        nodes.extend(_candidates(data))
    return nodes


def _offer(node: Dict[str, Any]) -> Dict[str, Any]:
    offers = node.get("offers")
    offers = first(offers)
    return offers if isinstance(offers, dict) else {}


def _availability(offer: Dict[str, Any]) -> Optional[bool]:
    availability = scalar_text(offer.get("availability"))
    if not availability:
        return None
    # schema.org/OutOfStock, SoldOut, Discontinued
    lowered = availability.lower()
    if "out" in lowered or "discontinued" in lowered:
        return False
    return True


def _properties(node: Dict[str, Any], out: Dict[str, Any]):
    props = node.get("additionalProperty")
    if isinstance(props, dict):
        props = [props]
    if not isinstance(props, list):
        return
    for prop in props:
        if not isinstance(prop, dict):
            continue
        name = scalar_text(prop.get("name"))
        value = prop.get("value")
        if not name or is_empty(value):
            continue
        name = name.lower().strip()
        values = value if isinstance(value, list) else [value]
        if name in ("thc", "thc%", "thc %", "total thc"):
            out.setdefault("thc", scalar_text(first(values)))
        elif name in ("cbd", "cbd%", "cbd %", "total cbd"):
            out.setdefault("cbd", scalar_text(first(values)))
        elif "effect" in name:
            out.setdefault("effects", []).extend(values)
        elif "flavor" in name or "flavour" in name or "taste" in name:
            out.setdefault("flavors", []).extend(values)


def _keywords(value: Any) -> List[str]:
    if isinstance(value, str):
        return [k.strip() for k in value.split(",") if k.strip()]
    if isinstance(value, list):
        return [k for k in (scalar_text(v) for v in value) if k]
    return []


def extract_jsonld(page: PageContext) -> Dict[str, Any]:
    """
    schema.org Product blocks. When several Product nodes exist, the first one
    to supply a field keeps it.
    """
    out: Dict[str, Any] = {}

    def put(key: str, value: Any):
        if not is_empty(value) and is_empty(out.get(key)):
            out[key] = value

    for node in product_nodes(page.soup):
        put("name", scalar_text(first(node.get("name"))))
        put("brand", named_text(node.get("brand")))
        put("category", joined_text(node.get("category")))
        put("description", scalar_text(node.get("description")))
        put("image_url", image_text(node.get("image")))
        put("tags", _keywords(node.get("keywords")))

        offer = _offer(node)
        if offer:
            price = offer.get("price")
            if is_empty(price):
                price = offer.get("lowPrice")
            put("price", scalar_text(price))
            if out.get("in_stock") is None:
                out["in_stock"] = _availability(offer)

        props: Dict[str, Any] = {}
        _properties(node, props)
        for key, value in props.items():
            put(key, value)

    return {k: v for k, v in out.items() if v is not None}
