"""Entry point that turns a product plus a photo or preset into a try-on result."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from image.generator import GenerationClient, GenerationError
from image.normalizer import (
    Fetcher,
    NormalizeOptions,
    compression_summary,
    normalize_pair,
    reference_of,
)
from shared.config import Settings
from shared.logs import emit_log
from shared.models import (
    TERMINAL_STATUSES,
    GenerationRequest,
    PresetImage,
    RequestStatus,
    SubjectKind,
)
from shared.storage import ObjectStorage, result_key

from . import records
from .cache import ResultCache
from .errors import GenerationFailed, InternalError, InvalidInput, TryOnError
from .ledger import UsageLedgerService
from .presets import PresetCatalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductRef:
    product_id: str
    title: str
    image: str

    def validate(self) -> None:
        if not (self.product_id and self.title and self.image):
            raise InvalidInput("Missing required product fields.")


@dataclass(frozen=True)
class ImageInput:
    """Exactly one of ``shopper_photo`` or ``preset_image_id`` must be set."""

    shopper_photo: Optional[str] = None
    preset_image_id: Optional[str] = None

    def validate(self) -> None:
        if self.shopper_photo and self.preset_image_id:
            raise InvalidInput("Provide either a photo or a preset image, not both.")
        if not self.shopper_photo and not self.preset_image_id:
            raise InvalidInput("Either a photo or a preset image is required.")


@dataclass
class GenerationOutcome:
    request_id: uuid.UUID
    status: RequestStatus
    result_reference: str
    cached: bool
    attempts: int
    compression: Optional[Dict[str, Any]] = None


class TryOnOrchestrator:
    """Sequences quota, cache, normalization, generation and metering.

    A credit is consumed once per request that ends COMPLETED, whether it was
    served from the preset cache or freshly generated.  Failed requests never
    touch the ledger.  Shopper photos bypass the cache entirely.
    """

    def __init__(
        self,
        session: Session,
        *,
        ledger: UsageLedgerService,
        cache: ResultCache,
        client: GenerationClient,
        storage: ObjectStorage,
        presets: Optional[PresetCatalog] = None,
        normalize_options: NormalizeOptions = NormalizeOptions(),
        fetch: Optional[Fetcher] = None,
        preset_base_url: str = "",
    ) -> None:
        self.session = session
        self.ledger = ledger
        self.cache = cache
        self.client = client
        self.storage = storage
        self.presets = presets or PresetCatalog(session)
        self.normalize_options = normalize_options
        self.fetch = fetch
        self.preset_base_url = preset_base_url

    @classmethod
    def from_settings(
        cls,
        session: Session,
        settings: Settings,
        *,
        client: GenerationClient,
        storage: ObjectStorage,
    ) -> "TryOnOrchestrator":
        return cls(
            session,
            ledger=UsageLedgerService.from_settings(session, settings),
            cache=ResultCache(session),
            client=client,
            storage=storage,
            normalize_options=NormalizeOptions(
                max_width=settings.normalize_max_width,
                max_height=settings.normalize_max_height,
                quality=settings.normalize_quality,
            ),
            preset_base_url=settings.preset_base_url,
        )

    def submit(self, store: str, product: ProductRef, image_input: ImageInput) -> GenerationOutcome:
        if not store:
            raise InvalidInput("A store identifier is required.")
        image_input.validate()
        product.validate()

        request: Optional[GenerationRequest] = None
        try:
            self.ledger.require_capacity(store)

            preset: Optional[PresetImage] = None
            if image_input.preset_image_id:
                preset = self.presets.get_active(image_input.preset_image_id)
                if preset is None:
                    raise InvalidInput("Unknown preset image.")
                entry = self.cache.lookup(store, preset.id, product.product_id)
                if entry is not None:
                    return self._serve_cached(store, product, preset, entry.result_reference)
                subject_ref = self.preset_source(preset)
                kind = SubjectKind.PRESET
            else:
                subject_ref = image_input.shopper_photo or ""
                kind = SubjectKind.SHOPPER_PHOTO

            request = records.create_request(
                self.session,
                store=store,
                product_id=product.product_id,
                product_title=product.title,
                product_image=product.image,
                subject_kind=kind,
                preset=preset,
            )
            return self._generate(request, subject_ref, product, preset)
        except TryOnError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure while processing try-on for %s", store)
            if request is not None:
                self._mark_internal_failure(request, exc)
            raise InternalError(request_id=str(request.id) if request else None) from exc

    def preset_source(self, preset: PresetImage) -> str:
        """Return the fetchable location of a preset image."""

        url = preset.image_url
        if self.preset_base_url and url.startswith("/") and not url.startswith("//"):
            return f"{self.preset_base_url.rstrip('/')}{url}"
        return url

    def _serve_cached(
        self, store: str, product: ProductRef, preset: PresetImage, reference: str
    ) -> GenerationOutcome:
        request = records.create_request(
            self.session,
            store=store,
            product_id=product.product_id,
            product_title=product.title,
            product_image=product.image,
            subject_kind=SubjectKind.PRESET,
            preset=preset,
            status=RequestStatus.COMPLETED,
            cached=True,
            result_reference=reference,
        )
        credits_used = self.ledger.increment(store)
        emit_log(
            self.session,
            request.id,
            "Served cached result",
            metadata={"preset_image_id": preset.id, "credits_used": credits_used},
        )
        return GenerationOutcome(
            request_id=request.id,
            status=RequestStatus.COMPLETED,
            result_reference=reference,
            cached=True,
            attempts=0,
        )

    def _generate(
        self,
        request: GenerationRequest,
        subject_ref: str,
        product: ProductRef,
        preset: Optional[PresetImage],
    ) -> GenerationOutcome:
        subject, garment = normalize_pair(
            subject_ref, product.image, self.normalize_options, fetch=self.fetch
        )
        compression = compression_summary(subject, garment)
        records.transition(
            self.session,
            request,
            RequestStatus.PROCESSING,
            diagnostics={"compression": compression, "provider": self.client.provider_name},
        )
        emit_log(
            self.session,
            request.id,
            "Generation started",
            metadata={"total_savings": compression["total_savings"]},
        )

        try:
            result = self.client.generate(reference_of(subject), reference_of(garment), product.title)
        except GenerationError as exc:
            records.transition(
                self.session,
                request,
                RequestStatus.FAILED,
                attempts=exc.attempts,
                error_code=exc.kind.value,
                error_reason=exc.diagnostic,
            )
            emit_log(
                self.session,
                request.id,
                "Generation failed; no credit charged",
                level="warning",
                metadata={"kind": exc.kind.value, "attempts": exc.attempts, "diagnostic": exc.diagnostic},
            )
            raise GenerationFailed(exc.kind.value, request_id=str(request.id)) from exc

        key = result_key(request.store, str(request.id), result.extension)
        reference = self.storage.put(result.image_bytes, key, result.mime_type)
        records.transition(
            self.session,
            request,
            RequestStatus.COMPLETED,
            result_reference=reference,
            attempts=result.attempts,
            diagnostics={"has_text": bool(result.text)},
        )

        if preset is not None:
            self._write_cache(request, preset, product, reference)

        credits_used = self.ledger.increment(request.store)
        emit_log(
            self.session,
            request.id,
            "Generation completed",
            metadata={"attempts": result.attempts, "credits_used": credits_used},
        )
        return GenerationOutcome(
            request_id=request.id,
            status=RequestStatus.COMPLETED,
            result_reference=reference,
            cached=False,
            attempts=result.attempts,
            compression=compression,
        )

    def _write_cache(
        self,
        request: GenerationRequest,
        preset: PresetImage,
        product: ProductRef,
        reference: str,
    ) -> None:
        """Store the preset result; a failure here never fails the request."""

        try:
            self.cache.upsert(
                store=request.store,
                preset_image_id=preset.id,
                product_id=product.product_id,
                result_reference=reference,
                product_title=product.title,
                product_image=product.image,
            )
        except Exception as exc:
            self.session.rollback()
            logger.warning("Could not cache result for request %s: %s", request.id, exc)

    def _mark_internal_failure(self, request: GenerationRequest, exc: Exception) -> None:
        try:
            self.session.rollback()
            if request.status in TERMINAL_STATUSES:
                return
            records.transition(
                self.session,
                request,
                RequestStatus.FAILED,
                error_code=InternalError.code,
                error_reason=f"{type(exc).__name__}: {exc}"[:500],
            )
        except Exception:
            self.session.rollback()
            logger.exception("Could not mark request %s as failed", request.id)
