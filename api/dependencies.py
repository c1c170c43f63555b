from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from image.generator import GenerationClient, build_client
from shared.config import get_settings
from shared.db import get_db
from shared.storage import ObjectStorage, get_storage
from tryon.cache import ResultCache
from tryon.ledger import UsageLedgerService
from tryon.orchestrator import TryOnOrchestrator


@lru_cache()
def get_generation_client() -> GenerationClient:
    return build_client(get_settings())


def get_object_storage() -> ObjectStorage:
    return get_storage()


def get_shop(shop: str | None = Query(None)) -> str:
    if not shop:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Shop parameter is required"
        )
    return shop


def get_ledger(session: Session = Depends(get_db)) -> UsageLedgerService:
    return UsageLedgerService.from_settings(session, get_settings())


def get_cache(session: Session = Depends(get_db)) -> ResultCache:
    return ResultCache(session)


def get_orchestrator(
    session: Session = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    storage: ObjectStorage = Depends(get_object_storage),
) -> TryOnOrchestrator:
    return TryOnOrchestrator.from_settings(session, get_settings(), client=client, storage=storage)
