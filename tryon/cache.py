"""Result cache for preset try-ons.

Entries are keyed on ``(store, preset_image_id, product_id)`` and nothing else.
No method accepts a shopper photo; callers only reach this module on the
preset path.
"""
from __future__ import annotations

import logging
import uuid
from typing import Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared.models import CachedResult, utcnow

logger = logging.getLogger(__name__)


class ResultCache:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.hits = 0
        self.misses = 0

    def _find(self, store: str, preset_image_id: str, product_id: str) -> Optional[CachedResult]:
        stmt = select(CachedResult).where(
            CachedResult.store == store,
            CachedResult.preset_image_id == preset_image_id,
            CachedResult.product_id == product_id,
        )
        return self.session.scalars(stmt).first()

    def lookup(self, store: str, preset_image_id: str, product_id: str) -> Optional[CachedResult]:
        entry = self._find(store, preset_image_id, product_id)
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        logger.debug(
            "Cache %s store=%s preset=%s product=%s",
            "hit" if entry else "miss",
            store,
            preset_image_id,
            product_id,
        )
        return entry

    def upsert(
        self,
        store: str,
        preset_image_id: str,
        product_id: str,
        result_reference: str,
        product_title: str,
        product_image: str,
    ) -> CachedResult:
        """Create or overwrite the entry for the key; the last writer wins."""

        values = {
            "result_reference": result_reference,
            "product_title": product_title,
            "product_image": product_image,
            "updated_at": utcnow(),
        }
        entry = self._find(store, preset_image_id, product_id)
        if entry is None:
            entry = CachedResult(
                id=uuid.uuid4(),
                store=store,
                preset_image_id=preset_image_id,
                product_id=product_id,
                **values,
            )
            self.session.add(entry)
            try:
                self.session.commit()
                return entry
            except IntegrityError:
                # A concurrent request inserted the same key first.
                self.session.rollback()
                entry = self._find(store, preset_image_id, product_id)
                if entry is None:
                    raise
        for key, value in values.items():
            setattr(entry, key, value)
        self.session.commit()
        return entry

    def invalidate_product(self, store: str, product_id: str) -> int:
        result = self.session.execute(
            delete(CachedResult).where(
                CachedResult.store == store, CachedResult.product_id == product_id
            )
        )
        self.session.commit()
        logger.info("Invalidated %s cached results for %s/%s", result.rowcount, store, product_id)
        return result.rowcount or 0

    def purge_store(self, store: str) -> int:
        result = self.session.execute(delete(CachedResult).where(CachedResult.store == store))
        self.session.commit()
        return result.rowcount or 0

    def stats(self, store: str) -> Dict[str, int]:
        total = self.session.scalar(
            select(func.count()).select_from(CachedResult).where(CachedResult.store == store)
        )
        unique_products = self.session.scalar(
            select(func.count(func.distinct(CachedResult.product_id))).where(
                CachedResult.store == store
            )
        )
        return {"total_cached": total or 0, "unique_products": unique_products or 0}
