from __future__ import annotations

from datetime import timedelta

from shared.logs import emit_log
from shared.models import (
    CachedResult,
    GenerationRequest,
    ProductSetting,
    RequestLog,
    SubjectKind,
    UsageLedger,
    utcnow,
)
from tryon import compliance, records
from tryon.cache import ResultCache
from tryon.ledger import UsageLedgerService


def _seed_store(session, store: str, storage) -> None:
    ledger = UsageLedgerService(session)
    ledger.ensure(store)
    ledger.set_product_enabled(store, "p1", True)
    ResultCache(session).upsert(
        store=store,
        preset_image_id="alex",
        product_id="p1",
        result_reference=f"/uploads/{store}/results/x.jpg",
        product_title="Shirt",
        product_image="https://cdn.example.com/p1.jpg",
    )
    request = records.create_request(
        session,
        store=store,
        product_id="p1",
        product_title="Shirt",
        product_image="https://cdn.example.com/p1.jpg",
        subject_kind=SubjectKind.SHOPPER_PHOTO,
    )
    emit_log(session, request.id, "created")
    storage.put(b"img", f"{store}/results/{request.id}.jpg")


def test_purge_store_removes_every_row(session, preset, storage) -> None:
    _seed_store(session, "store", storage)
    _seed_store(session, "keep", storage)

    breakdown = compliance.purge_store(session, "store", storage)

    assert breakdown["requests"] == 1
    assert breakdown["cached_results"] == 1
    assert breakdown["ledger"] == 1
    assert breakdown["product_settings"] == 1
    assert breakdown["stored_objects"] == 1
    assert breakdown["total"] == 5
    for model in (GenerationRequest, CachedResult, UsageLedger, ProductSetting):
        assert session.query(model).filter(model.store == "store").count() == 0
        assert session.query(model).filter(model.store == "keep").count() == 1
    assert session.query(RequestLog).count() == 1


def test_redact_customer_requests_respects_cutoff(session) -> None:
    old = records.create_request(
        session,
        store="store",
        product_id="p1",
        product_title="Shirt",
        product_image="https://cdn.example.com/p1.jpg",
        subject_kind=SubjectKind.SHOPPER_PHOTO,
    )
    fresh = records.create_request(
        session,
        store="store",
        product_id="p2",
        product_title="Shirt",
        product_image="https://cdn.example.com/p2.jpg",
        subject_kind=SubjectKind.SHOPPER_PHOTO,
    )
    old.created_at = utcnow() - timedelta(hours=49)
    session.commit()

    assert compliance.redact_customer_requests(session, "store") == 1
    assert [row.id for row in session.query(GenerationRequest).all()] == [fresh.id]


def test_uninstall_keeps_a_deactivated_ledger(session, preset, storage) -> None:
    _seed_store(session, "store", storage)
    ledger = UsageLedgerService(session)
    ledger.increment("store")

    breakdown = compliance.uninstall_store(session, "store", storage)

    assert "ledger" not in breakdown
    assert breakdown["requests"] == 1
    assert breakdown["stored_objects"] == 1
    for model in (GenerationRequest, CachedResult, ProductSetting):
        assert session.query(model).filter(model.store == "store").count() == 0
    kept = session.query(UsageLedger).filter(UsageLedger.store == "store").one()
    assert kept.is_active is False
    assert kept.credits_used == 1
    assert ledger.has_capacity("store") is False

    ledger.apply_plan("store", "FREE")
    assert ledger.has_capacity("store") is True
