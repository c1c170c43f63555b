from __future__ import annotations

import uuid

from shared.models import CachedResult
from tryon.cache import ResultCache


def _upsert(cache: ResultCache, store: str, product_id: str, reference: str, preset_id: str = "alex"):
    return cache.upsert(
        store=store,
        preset_image_id=preset_id,
        product_id=product_id,
        result_reference=reference,
        product_title="Linen Shirt",
        product_image="https://cdn.example.com/p.jpg",
    )


def test_lookup_is_scoped_to_store_preset_and_product(session, preset) -> None:
    cache = ResultCache(session)
    _upsert(cache, "store-a", "p1", "/uploads/a.jpg")

    assert cache.lookup("store-a", "alex", "p1").result_reference == "/uploads/a.jpg"
    assert cache.lookup("store-b", "alex", "p1") is None
    assert cache.lookup("store-a", "alex", "p2") is None
    assert cache.lookup("store-a", "other", "p1") is None
    assert (cache.hits, cache.misses) == (1, 3)


def test_upsert_is_idempotent_and_last_writer_wins(session, preset) -> None:
    cache = ResultCache(session)
    first = _upsert(cache, "store", "p1", "/uploads/first.jpg")
    second = _upsert(cache, "store", "p1", "/uploads/second.jpg")

    assert first.id == second.id
    assert session.query(CachedResult).count() == 1
    assert cache.lookup("store", "alex", "p1").result_reference == "/uploads/second.jpg"


def test_invalidate_purge_and_stats(session, preset) -> None:
    cache = ResultCache(session)
    _upsert(cache, "store", "p1", "/uploads/1.jpg")
    _upsert(cache, "store", "p2", "/uploads/2.jpg")
    _upsert(cache, "other", "p1", "/uploads/3.jpg")

    assert cache.stats("store") == {"total_cached": 2, "unique_products": 2}
    assert cache.invalidate_product("store", "p1") == 1
    assert cache.lookup("store", "alex", "p1") is None
    assert cache.lookup("other", "alex", "p1") is not None
    assert cache.purge_store("store") == 1
    assert cache.stats("store") == {"total_cached": 0, "unique_products": 0}


def test_concurrent_insert_is_overwritten_by_last_writer(session, session_factory, preset, monkeypatch) -> None:
    cache = ResultCache(session)
    real_find = cache._find
    calls = []

    def find_after_rival_insert(store, preset_image_id, product_id):
        calls.append(store)
        if len(calls) == 1:
            with session_factory() as rival:
                rival.add(
                    CachedResult(
                        id=uuid.uuid4(),
                        store=store,
                        preset_image_id=preset_image_id,
                        product_id=product_id,
                        product_title="Linen Shirt",
                        product_image="https://cdn.example.com/p.jpg",
                        result_reference="/uploads/rival.jpg",
                    )
                )
                rival.commit()
            return None
        return real_find(store, preset_image_id, product_id)

    monkeypatch.setattr(cache, "_find", find_after_rival_insert)

    entry = _upsert(cache, "store", "p1", "/uploads/mine.jpg")

    assert len(calls) == 2
    assert entry.result_reference == "/uploads/mine.jpg"
    rows = session.query(CachedResult).all()
    assert len(rows) == 1
    assert rows[0].result_reference == "/uploads/mine.jpg"
