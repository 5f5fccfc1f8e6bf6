import logging
from typing import Any, Dict, NamedTuple, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

from .adapters.adapter_embedded import extract_embedded
from .adapters.adapter_jsonld import extract_jsonld
from .adapters.adapter_opengraph import extract_opengraph
from .adapters.adapter_structure import extract_category, extract_description
from .adapters.base import PRODUCT_FIELDS, PageContext, Strategy, is_empty
from .normalizer import extract_remote_id, sanitize_record
from .schema import ProductRecord

logger = logging.getLogger(__name__)


class ChainStep(NamedTuple):
    name: str
    strategy: Strategy
    # Run only while at least one of these fields is still empty (None = always run).
    only_if_empty: Optional[Tuple[str, ...]] = None


DEFAULT_CHAIN: Tuple[ChainStep, ...] = (
    ChainStep("jsonld", extract_jsonld),
    ChainStep("opengraph", extract_opengraph),
    ChainStep("embedded", extract_embedded),
    ChainStep("category", extract_category, ("category",)),
    ChainStep("description", extract_description, ("description",)),
)


def merge_first_writer(merged: Dict[str, Any], partial: Dict[str, Any]) -> Dict[str, Any]:
    """Copy fields from `partial` that are still empty in `merged`. Never overwrites."""
    for key, value in partial.items():
        if key in PRODUCT_FIELDS and is_empty(merged.get(key)) and not is_empty(value):
            merged[key] = value
    return merged


class ContentExtractor:
    """
    Page body -> ProductRecord through an ordered chain of strategies.

    Earlier strategies win: JSON-LD beats OpenGraph beats embedded state beats
    page-structure guesses. Never raises; a page with nothing recognizable
    comes back as a record with an empty name, which callers treat as invalid.
    """

    def __init__(self, chain: Sequence[ChainStep] = DEFAULT_CHAIN):
        self.chain = tuple(chain)

    def extract_fields(self, html: str, url: str) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        try:
            soup = BeautifulSoup(html or "", "lxml")
        except Exception:
            logger.exception("[EXTRACT] could not parse %s", url)
            return merged
        page = PageContext(html=html or "", url=url, soup=soup)

        for step in self.chain:
            if step.only_if_empty and not any(is_empty(merged.get(f)) for f in step.only_if_empty):
                continue
            try:
                partial = step.strategy(page)
            except Exception:
                # One broken strategy must not cost us what the others found.
                logger.warning("[EXTRACT] %s strategy failed on %s", step.name, url, exc_info=True)
                continue
            merge_first_writer(merged, partial or {})

        merged["remote_id"] = extract_remote_id(url)
        return merged

    def extract(self, html: str, url: str) -> ProductRecord:
        fields = self.extract_fields(html, url)
        try:
            return sanitize_record(fields, url)
        except Exception:
            logger.warning("[EXTRACT] could not sanitize record for %s", url, exc_info=True)
            return sanitize_record({}, url)
