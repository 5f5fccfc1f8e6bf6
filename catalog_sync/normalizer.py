import hashlib
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import parse_qs, urljoin, urlsplit, urlunsplit

import tldextract
from bs4 import BeautifulSoup
from slugify import slugify

from .schema import ProductRecord

# Bundled public-suffix snapshot only; never reach out to the network for it.
_tld = tldextract.TLDExtract(suffix_list_urls=())

_SKIP_SCHEMES = re.compile(r"^\s*(javascript|mailto|tel|data|sms):", re.I)
_HEX_ID = re.compile(r"/([a-f0-9]{24})/?$", re.I)
_NUM_ID = re.compile(r"/(\d+)/?$")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")

DESCRIPTION_TAGS = {"p", "br", "ul", "ol", "li", "strong", "em", "b", "i"}
_DROP_TAGS = ("script", "style", "iframe", "noscript", "object", "embed", "form")


# ---------------------------------------------------------------------- #
# URLs
# ---------------------------------------------------------------------- #
def normalize_url(url: Optional[str], base: Optional[str] = None) -> Optional[str]:
    """
    Absolute http(s) URL without fragment or query string, or None when `url`
    is not something we would ever fetch. Relative URLs resolve against the
    scheme + host of `base`. normalize_url(normalize_url(u)) == normalize_url(u).
    """
    if not url:
        return None
    url = url.strip()
    if not url or url.startswith("#") or _SKIP_SCHEMES.match(url):
        return None

    if base:
        parts = urlsplit(base)
        url = urljoin(f"{parts.scheme}://{parts.netloc}/", url)

    parts = urlsplit(url)
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", "", ""))


def same_host(a: str, b: str) -> bool:
    return urlsplit(a).netloc.lower() == urlsplit(b).netloc.lower()


def path_segments(url: str) -> List[str]:
    return [seg for seg in urlsplit(url).path.split("/") if seg]


def is_under(url: str, base: str) -> bool:
    """True when `url` is `base` or lives below it (path-segment aware)."""
    if not same_host(url, base):
        return False
    base_segs = path_segments(base)
    return path_segments(url)[: len(base_segs)] == base_segs


def registered_domain(url: str) -> str:
    host = urlsplit(url).hostname or ""
    ext = _tld(host)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return host


def make_id(url: str) -> str:
    dom = registered_domain(url)
    base = slugify("-".join(path_segments(url))[0:80])
    digest = hashlib.sha1(url.encode()).hexdigest()[:8]
    return f"{dom}-{base}-{digest}" if base else f"{dom}-{digest}"


def extract_remote_id(url: str) -> str:
    """24-hex id segment, else trailing numeric segment, else `id=` query parameter."""
    parts = urlsplit(url)
    path = parts.path
    m = _HEX_ID.search(path)
    if m:
        return m.group(1)
    m = _NUM_ID.search(path)
    if m:
        return m.group(1)
    ids = parse_qs(parts.query).get("id")
    if ids and ids[0]:
        return ids[0]
    return ""


# ---------------------------------------------------------------------- #
# Text
# ---------------------------------------------------------------------- #
def collapse_ws(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def strip_tags(value: Any) -> str:
    if value is None:
        return ""
    text = str(value)
    if "<" not in text and "&" not in text:
        return collapse_ws(text)
    soup = BeautifulSoup(text, "lxml")
    for tag in soup(_DROP_TAGS):
        tag.decompose()
    return collapse_ws(soup.get_text(" "))


def clean_html(value: Any, allowed=DESCRIPTION_TAGS) -> str:
    """Keep a small set of formatting tags (attributes removed), drop the rest."""
    if value is None:
        return ""
    text = str(value).strip()
    if "<" not in text:
        return strip_tags(text)
    soup = BeautifulSoup(text, "lxml")
    for tag in soup(_DROP_TAGS):
        tag.decompose()
    for tag in soup.find_all(True):
        if tag.name in ("html", "body"):
            continue
        if tag.name in allowed:
            tag.attrs = {}
        else:
            tag.unwrap()
    root = soup.body or soup
    return "".join(str(c) for c in root.contents).strip()


def numeric_text(value: Any) -> str:
    """
    "$1,234.50" -> "1234.50", 35 -> "35", "22.5%" -> "22.5". Empty string when
    there is no number to keep.
    """
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float, Decimal)):
        try:
            d = Decimal(str(value))
        except InvalidOperation:
            return ""
        return format(d.normalize(), "f") if d == d.to_integral_value() else format(d, "f")
    text = str(value).replace(",", "")
    m = _NUMBER.search(text)
    return m.group(0) if m else ""


def string_list(values: Any) -> List[str]:
    """Flatten to trimmed, tag-free, de-duplicated strings (first spelling wins)."""
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    elif isinstance(values, dict):
        values = [values.get("name") or values.get("value")]
    out: List[str] = []
    seen = set()
    for v in _flatten(values):
        s = strip_tags(v)
        if s and s.lower() not in seen:
            seen.add(s.lower())
            out.append(s)
    return out


def _flatten(values: Iterable[Any]) -> Iterable[Any]:
    for v in values:
        if isinstance(v, (list, tuple)):
            yield from _flatten(v)
        elif isinstance(v, dict):
            yield v.get("name") or v.get("value")
        elif v is not None:
            yield v


def clean_url(value: Any) -> str:
    if not value or not isinstance(value, str):
        return ""
    value = value.strip()
    parts = urlsplit(value)
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return ""
    return value


# ---------------------------------------------------------------------- #
# Records
# ---------------------------------------------------------------------- #
def sanitize_record(raw: Dict[str, Any], source_url: str) -> ProductRecord:
    """Turn a merged partial record from the extraction chain into a storable ProductRecord."""
    canonical = normalize_url(source_url) or source_url
    in_stock = raw.get("in_stock")
    return ProductRecord(
        url=canonical,
        domain=registered_domain(canonical),
        name=strip_tags(raw.get("name")),
        brand=strip_tags(raw.get("brand")),
        category=strip_tags(raw.get("category")),
        description=clean_html(raw.get("description")),
        price=numeric_text(raw.get("price")),
        thc=numeric_text(raw.get("thc")),
        cbd=numeric_text(raw.get("cbd")),
        tags=string_list(raw.get("tags")),
        effects=string_list(raw.get("effects")),
        flavors=string_list(raw.get("flavors")),
        image_url=clean_url(raw.get("image_url")),
        in_stock=True if in_stock is None else bool(in_stock),
        remote_id=strip_tags(raw.get("remote_id") or extract_remote_id(source_url)),
    )


def split_terms(value: str) -> List[str]:
    """'Flower, Indica' -> ['Flower', 'Indica'] for taxonomy tagging."""
    return [t for t in (s.strip() for s in (value or "").split(",")) if t]
