"""Try-on generation client and provider adapters."""
from __future__ import annotations

import abc
import base64
import binascii
import hashlib
import io
import logging
import random
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
from PIL import Image, ImageDraw

from prompts.library import tryon_instruction
from shared.config import Settings

from .normalizer import Fetcher, fetch_remote, is_remote

logger = logging.getLogger(__name__)

GRID_SIZE = (1024, 1024)
SAFETY_FINISH_REASONS = frozenset(
    {
        "SAFETY",
        "PROHIBITED_CONTENT",
        "BLOCKLIST",
        "SPII",
        "IMAGE_SAFETY",
        "IMAGE_PROHIBITED_CONTENT",
    }
)
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
DIAGNOSTIC_LIMIT = 500
_MIME_PATTERN = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,", re.IGNORECASE)


class FailureKind(str, Enum):
    NO_IMAGE = "NO_IMAGE"
    TEXT_ONLY = "TEXT_ONLY"
    BLOCKED = "BLOCKED"
    PROVIDER_ERROR = "PROVIDER_ERROR"


RETRYABLE_KINDS = frozenset({FailureKind.TEXT_ONLY})


class ProviderUnavailable(RuntimeError):
    """Transient provider or network failure; safe to retry."""


class ProviderRejected(RuntimeError):
    """The provider refused the request outright; retrying will not help."""


class GenerationError(RuntimeError):
    """Raised when no image could be produced.

    ``diagnostic`` carries the raw provider detail and is meant for logs only.
    """

    def __init__(self, kind: FailureKind, diagnostic: str, attempts: int) -> None:
        super().__init__(f"{kind.value} after {attempts} attempt(s)")
        self.kind = kind
        self.diagnostic = diagnostic[:DIAGNOSTIC_LIMIT]
        self.attempts = attempts


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float = 0.2
    max_output_tokens: int = 8192
    candidate_count: int = 1


@dataclass
class InlinePart:
    mime_type: str
    data: str


@dataclass
class GenerationResult:
    image_bytes: bytes
    mime_type: str
    attempts: int
    text: Optional[str] = None

    @property
    def extension(self) -> str:
        return {"image/png": "png", "image/webp": "webp"}.get(self.mime_type, "jpg")


@dataclass
class Classification:
    kind: Optional[FailureKind]
    image_bytes: Optional[bytes] = None
    mime_type: str = "image/jpeg"
    text: Optional[str] = None
    diagnostic: str = ""


def _field(mapping: Dict[str, Any], camel: str, snake: str) -> Any:
    value = mapping.get(camel)
    if value is None:
        value = mapping.get(snake)
    return value


def classify_response(payload: Dict[str, Any]) -> Classification:
    """Sort a raw provider response into image / blocked / text-only / empty.

    A safety block wins over everything, an image wins over any accompanying
    text, and text without an image is reported as ``TEXT_ONLY``.
    """

    feedback = _field(payload, "promptFeedback", "prompt_feedback") or {}
    block_reason = _field(feedback, "blockReason", "block_reason")
    if block_reason:
        return Classification(FailureKind.BLOCKED, diagnostic=f"prompt blocked: {block_reason}")

    candidates: List[Dict[str, Any]] = payload.get("candidates") or []
    for candidate in candidates:
        finish_reason = str(_field(candidate, "finishReason", "finish_reason") or "")
        if finish_reason in SAFETY_FINISH_REASONS:
            return Classification(
                FailureKind.BLOCKED, diagnostic=f"generation blocked: {finish_reason}"
            )

    inline: Optional[Dict[str, Any]] = None
    texts: List[str] = []
    for candidate in candidates:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            data = _field(part, "inlineData", "inline_data")
            if data and data.get("data") and inline is None:
                inline = data
            elif part.get("text"):
                texts.append(str(part["text"]))
    text = "\n".join(texts) if texts else None

    if inline is not None:
        try:
            image_bytes = base64.b64decode(inline["data"], validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            return Classification(FailureKind.NO_IMAGE, text=text, diagnostic=f"undecodable image: {exc}")
        if not image_bytes:
            return Classification(FailureKind.NO_IMAGE, text=text, diagnostic="image part decoded to zero bytes")
        mime_type = _field(inline, "mimeType", "mime_type") or "image/jpeg"
        return Classification(None, image_bytes=image_bytes, mime_type=mime_type, text=text)

    if text:
        return Classification(FailureKind.TEXT_ONLY, text=text, diagnostic=f"text only: {text}")

    reasons = [str(_field(c, "finishReason", "finish_reason") or "-") for c in candidates]
    return Classification(
        FailureKind.NO_IMAGE,
        diagnostic=f"no image in response (candidates={len(candidates)}, finish={','.join(reasons) or '-'})",
    )


class Provider(abc.ABC):
    name: str = "provider"

    @abc.abstractmethod
    def generate_content(
        self, instruction: str, parts: Sequence[InlinePart], config: GenerationConfig
    ) -> Dict[str, Any]:
        """Perform one provider call and return the raw response body."""

    def close(self) -> None:
        return None


class GeminiProvider(Provider):
    """Calls the Generative Language ``generateContent`` REST endpoint."""

    name = "gemini"

    def __init__(self, api_key: str, model: str, endpoint: str, timeout: float = 90.0) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if not self._client:
            self._client = httpx.Client(timeout=httpx.Timeout(self.timeout, connect=10.0))
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def build_payload(
        self, instruction: str, parts: Sequence[InlinePart], config: GenerationConfig
    ) -> Dict[str, Any]:
        content_parts: List[Dict[str, Any]] = [{"text": instruction}]
        for part in parts:
            content_parts.append({"inline_data": {"mime_type": part.mime_type, "data": part.data}})
        return {
            "contents": [{"role": "user", "parts": content_parts}],
            "generationConfig": {
                "temperature": config.temperature,
                "candidateCount": config.candidate_count,
                "maxOutputTokens": config.max_output_tokens,
                "responseModalities": ["TEXT", "IMAGE"],
            },
        }

    def generate_content(
        self, instruction: str, parts: Sequence[InlinePart], config: GenerationConfig
    ) -> Dict[str, Any]:
        url = f"{self.endpoint}/models/{self.model}:generateContent"
        try:
            response = self.client.post(
                url,
                headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                json=self.build_payload(instruction, parts, config),
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise ProviderUnavailable(f"HTTP {response.status_code}: {response.text[:200]}")
        if response.status_code >= 400:
            raise ProviderRejected(f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderUnavailable(
                f"HTTP {response.status_code} with non-JSON body: {response.text[:200]}"
            ) from exc
        if not isinstance(body, dict):
            raise ProviderUnavailable(f"unexpected response body type: {type(body).__name__}")
        return body


class StubProvider(Provider):
    """Deterministic local provider that tiles the inputs into a 2x2 collage."""

    name = "stub"

    def _decode(self, part: InlinePart, fallback_seed: int) -> Image.Image:
        try:
            raw = base64.b64decode(part.data)
            with Image.open(io.BytesIO(raw)) as opened:
                return opened.convert("RGB")
        except Exception:  # unreadable inputs become flat swatches
            rng = random.Random(fallback_seed)
            color = tuple(rng.randint(70, 200) for _ in range(3))
            return Image.new("RGB", (512, 512), color)

    def generate_content(
        self, instruction: str, parts: Sequence[InlinePart], config: GenerationConfig
    ) -> Dict[str, Any]:
        digest = hashlib.sha256("".join(p.data[:256] for p in parts).encode("utf-8")).hexdigest()
        seed = int(digest[:8], 16)
        subject = self._decode(parts[0], seed)
        garment = self._decode(parts[1], seed + 1) if len(parts) > 1 else None

        tile_w, tile_h = GRID_SIZE[0] // 2, GRID_SIZE[1] // 2
        canvas = Image.new("RGB", GRID_SIZE, (255, 255, 255))
        corners = [(0.05, 0.55), (0.6, 0.55), (0.05, 0.05), (0.6, 0.05)]
        for index, (fx, fy) in enumerate(corners):
            tile = subject.copy()
            tile.thumbnail((tile_w, tile_h))
            frame = Image.new("RGB", (tile_w, tile_h), (245, 245, 245))
            frame.paste(tile, ((tile_w - tile.width) // 2, (tile_h - tile.height) // 2))
            if garment is not None:
                swatch = garment.copy()
                swatch.thumbnail((tile_w // 3, tile_h // 3))
                frame.paste(swatch, (int(tile_w * fx), int(tile_h * fy)))
            ImageDraw.Draw(frame).rectangle([0, 0, tile_w - 1, tile_h - 1], outline=(200, 200, 200))
            canvas.paste(frame, ((index % 2) * tile_w, (index // 2) * tile_h))

        buffer = io.BytesIO()
        canvas.save(buffer, format="JPEG", quality=90)
        return {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {
                                "inlineData": {
                                    "mimeType": "image/jpeg",
                                    "data": base64.b64encode(buffer.getvalue()).decode("ascii"),
                                }
                            }
                        ]
                    },
                    "finishReason": "STOP",
                }
            ],
            "stub": {"seed": seed},
        }


class GenerationClient:
    """Runs one try-on generation with bounded, linearly backed-off retries.

    Only ``TEXT_ONLY`` responses and transport failures are retried; safety
    blocks, empty responses and provider rejections end the loop at once.
    """

    def __init__(
        self,
        provider: Provider,
        config: GenerationConfig = GenerationConfig(),
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
        fetch: Optional[Fetcher] = None,
    ) -> None:
        self.provider = provider
        self.config = config
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._fetch = fetch or fetch_remote

    @property
    def provider_name(self) -> str:
        return self.provider.name

    def close(self) -> None:
        self.provider.close()

    def to_part(self, image_ref: str) -> InlinePart:
        match = _MIME_PATTERN.match(image_ref)
        if match:
            return InlinePart(mime_type=match.group(1).lower(), data=image_ref[match.end():])
        if is_remote(image_ref):
            payload = self._fetch(image_ref)
            return InlinePart(mime_type="image/jpeg", data=base64.b64encode(payload).decode("ascii"))
        try:
            decoded = base64.b64decode(image_ref, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"unusable image reference {image_ref[:80]!r}") from exc
        if not decoded:
            raise ValueError("empty image reference")
        return InlinePart(mime_type="image/jpeg", data=image_ref)

    def generate(self, subject_image: str, garment_image: str, garment_label: str) -> GenerationResult:
        try:
            parts = [self.to_part(subject_image), self.to_part(garment_image)]
        except (httpx.HTTPError, ValueError) as exc:
            raise GenerationError(
                FailureKind.PROVIDER_ERROR, f"failed to load input image: {exc}", 0
            ) from exc
        instruction = tryon_instruction(garment_label)

        last_kind = FailureKind.PROVIDER_ERROR
        last_diagnostic = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                payload = self.provider.generate_content(instruction, parts, self.config)
            except ProviderRejected as exc:
                raise GenerationError(FailureKind.PROVIDER_ERROR, str(exc), attempt) from exc
            except (ProviderUnavailable, httpx.HTTPError) as exc:
                last_kind = FailureKind.PROVIDER_ERROR
                last_diagnostic = f"{type(exc).__name__}: {exc}"
            else:
                outcome = classify_response(payload)
                if outcome.kind is None:
                    logger.info(
                        "Generation succeeded via %s on attempt %s/%s",
                        self.provider_name,
                        attempt,
                        self.max_attempts,
                    )
                    return GenerationResult(
                        image_bytes=outcome.image_bytes,
                        mime_type=outcome.mime_type,
                        attempts=attempt,
                        text=outcome.text,
                    )
                if outcome.kind not in RETRYABLE_KINDS:
                    raise GenerationError(outcome.kind, outcome.diagnostic, attempt)
                last_kind = outcome.kind
                last_diagnostic = outcome.diagnostic

            logger.warning(
                "Generation attempt %s/%s failed with %s",
                attempt,
                self.max_attempts,
                last_kind.value,
            )
            if attempt < self.max_attempts:
                self._sleep(self.backoff_seconds * attempt)

        raise GenerationError(last_kind, last_diagnostic, self.max_attempts)


def build_provider(settings: Settings) -> Provider:
    if settings.provider.lower() == "stub":
        return StubProvider()
    if not settings.gemini_api_key:
        logger.warning("TRYON_GEMINI_API_KEY is not configured; falling back to the stub provider")
        return StubProvider()
    return GeminiProvider(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        endpoint=settings.gemini_endpoint,
        timeout=settings.generation_timeout_seconds,
    )


def build_client(settings: Settings, provider: Optional[Provider] = None) -> GenerationClient:
    return GenerationClient(
        provider or build_provider(settings),
        GenerationConfig(
            temperature=settings.generation_temperature,
            max_output_tokens=settings.generation_max_output_tokens,
        ),
        max_attempts=settings.generation_max_attempts,
        backoff_seconds=settings.generation_backoff_seconds,
    )
