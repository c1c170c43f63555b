from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from shared.db import get_db
from tryon.errors import GenerationFailed, InternalError, InvalidInput, LimitExceeded, TryOnError
from tryon.orchestrator import ImageInput, ProductRef, TryOnOrchestrator
from tryon.presets import PresetCatalog

from ..dependencies import get_orchestrator, get_shop
from ..schemas.tryon import (
    PresetEntry,
    PresetListResponse,
    TryOnCreateRequest,
    TryOnErrorResponse,
    TryOnResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/proxy", tags=["storefront"])

ERROR_STATUS: dict[type[TryOnError], int] = {
    InvalidInput: status.HTTP_400_BAD_REQUEST,
    LimitExceeded: status.HTTP_403_FORBIDDEN,
    # The storefront widget handles retryable generation failures inline.
    GenerationFailed: status.HTTP_200_OK,
    InternalError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_response(exc: TryOnError) -> JSONResponse:
    body = TryOnErrorResponse(
        code=exc.code,
        error=exc.message,
        retryable=exc.retryable,
        request_id=getattr(exc, "request_id", None),
    )
    return JSONResponse(
        status_code=ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=body.model_dump(mode="json", by_alias=True),
    )


@router.post("/tryon", response_model=TryOnResponse)
def create_tryon(
    payload: TryOnCreateRequest,
    shop: str = Depends(get_shop),
    orchestrator: TryOnOrchestrator = Depends(get_orchestrator),
):
    product = ProductRef(
        product_id=payload.product_id,
        title=payload.product_title,
        image=payload.product_image,
    )
    image_input = ImageInput(
        shopper_photo=payload.user_photo or None,
        preset_image_id=payload.preset_image_id or None,
    )
    try:
        outcome = orchestrator.submit(shop, product, image_input)
    except TryOnError as exc:
        logger.info("Try-on for %s rejected with %s", shop, exc.code)
        return error_response(exc)

    body = TryOnResponse(
        request_id=outcome.request_id,
        result_image=outcome.result_reference,
        cached=outcome.cached,
        attempts=outcome.attempts,
    )
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))


@router.get("/presets", response_model=PresetListResponse)
def list_presets(session: Session = Depends(get_db)):
    presets = PresetCatalog(session).list_active()
    body = PresetListResponse(images=[PresetEntry.model_validate(preset) for preset in presets])
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))
