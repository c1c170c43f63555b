from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from shared.storage import ObjectStorage, StorageError, UnsafePathError, guess_content_type

from ..dependencies import get_object_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])

CACHE_CONTROL = "public, max-age=3600"


@router.get("/{path:path}")
def get_upload(path: str, storage: ObjectStorage = Depends(get_object_storage)) -> Response:
    try:
        payload = storage.get(path)
    except UnsafePathError:
        logger.warning("Rejected upload path outside storage root: %s", path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    except FileNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    except StorageError:
        logger.exception("Failed to read upload %s", path)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to read file"
        )
    return Response(
        content=payload,
        media_type=guess_content_type(path),
        headers={"Cache-Control": CACHE_CONTROL},
    )
