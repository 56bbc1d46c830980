import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

PREFIX_LENGTH = 9


def _key(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class IdentityResolver:
    """
    Map a marketplace item identifier to an internal product id.

    Lookup chain, first hit wins:
      1. active mapping for the marketplace (exact external id)
      2. exact internal SKU / external SKU of an active product
      3. first 9 characters against the 9-character SKU prefix of active products

    Tiers 1-3 only look at the item id. An optional seller SKU code is tried
    last, as an exact SKU match; it never goes through the prefix table.

    All three tables are built once in the constructor, so resolve() is a few
    dict lookups. Ids that resolve nowhere are counted for reconciliation.
    """

    def __init__(self, products: Iterable[dict], mappings: Iterable[dict]):
        self.mapping_table: Dict[str, str] = {}
        self.ambiguous_ids: Set[str] = set()
        self.sku_table: Dict[str, str] = {}
        self.prefix_table: Dict[str, str] = {}
        self.prefix_collisions: Set[str] = set()
        self.unmapped: Counter = Counter()
        self.ambiguous_hits: Counter = Counter()

        for m in mappings:
            ext_id = _key(m.get("external_option_id"))
            product_id = _key(m.get("product_id"))
            if not ext_id or not product_id:
                continue
            current = self.mapping_table.get(ext_id)
            if current is None and ext_id not in self.ambiguous_ids:
                self.mapping_table[ext_id] = product_id
            elif current is not None and current != product_id:
                self.mapping_table.pop(ext_id, None)
                self.ambiguous_ids.add(ext_id)

        sku_dupes = 0
        for p in products:
            product_id = _key(p.get("id"))
            if not product_id:
                continue
            for field in ("sku", "external_sku"):
                sku = _key(p.get(field))
                if not sku:
                    continue
                owner = self.sku_table.setdefault(sku, product_id)
                if owner != product_id:
                    sku_dupes += 1

            sku = _key(p.get("sku"))
            if sku and len(sku) >= PREFIX_LENGTH:
                prefix = sku[:PREFIX_LENGTH]
                if prefix in self.prefix_collisions:
                    continue
                owner = self.prefix_table.setdefault(prefix, product_id)
                if owner != product_id:
                    self.prefix_table.pop(prefix, None)
                    self.prefix_collisions.add(prefix)

        if self.ambiguous_ids:
            logger.warning(
                "[Resolver] %d external id(s) mapped to more than one product, treated as unresolvable: %s",
                len(self.ambiguous_ids),
                sorted(self.ambiguous_ids)[:10],
            )
        if self.prefix_collisions:
            logger.warning(
                "[Resolver] %d SKU prefix collision(s), prefix fallback disabled for: %s",
                len(self.prefix_collisions),
                sorted(self.prefix_collisions)[:10],
            )
        if sku_dupes:
            logger.warning("[Resolver] %d SKU value(s) shared by several products; first product kept", sku_dupes)

    def resolve(self, external_item_id, external_sku=None) -> Optional[str]:
        ext_id = _key(external_item_id)
        ext_sku = _key(external_sku)

        if ext_id is not None:
            if ext_id in self.ambiguous_ids:
                self.ambiguous_hits[ext_id] += 1
                return None
            hit = self.mapping_table.get(ext_id)
            if hit:
                return hit

            hit = self.sku_table.get(ext_id)
            if hit:
                return hit
            if len(ext_id) >= PREFIX_LENGTH:
                hit = self.prefix_table.get(ext_id[:PREFIX_LENGTH])
                if hit:
                    return hit

        if ext_sku is not None and ext_sku in self.sku_table:
            return self.sku_table[ext_sku]

        self.unmapped[ext_id or ext_sku or "<missing>"] += 1
        return None

    def unmapped_ids(self, limit: int = 100) -> List[Dict[str, object]]:
        return [{"external_id": k, "events": n} for k, n in self.unmapped.most_common(limit)]

    def log_summary(self) -> None:
        if self.unmapped:
            logger.warning(
                "[Resolver] %d unmapped external id(s) across %d event(s); sample: %s",
                len(self.unmapped),
                sum(self.unmapped.values()),
                [k for k, _ in self.unmapped.most_common(5)],
            )
        if self.ambiguous_hits:
            logger.warning(
                "[Resolver] %d event(s) dropped on ambiguous mappings",
                sum(self.ambiguous_hits.values()),
            )
