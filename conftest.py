from __future__ import annotations

import base64
import io
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from api.dependencies import get_generation_client, get_object_storage, get_orchestrator
from api.main import app
from image.generator import GenerationClient, GenerationConfig, InlinePart, Provider
from shared.db import get_db
from shared.models import Base, PresetImage
from shared.storage import LocalStorage
from tryon.cache import ResultCache
from tryon.ledger import UsageLedgerService
from tryon.orchestrator import TryOnOrchestrator

PRODUCT_URL = "https://cdn.example.com/products/linen-shirt.jpg"
PRESET_URL = "https://cdn.example.com/presets/alex.jpg"


def make_jpeg(width: int = 64, height: int = 48, color: tuple = (200, 40, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


class GeminiResponses:
    """Builders for provider response bodies."""

    @staticmethod
    def image(payload: bytes | None = None, text: str | None = None) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = []
        if text:
            parts.append({"text": text})
        parts.append(
            {
                "inlineData": {
                    "mimeType": "image/jpeg",
                    "data": base64.b64encode(payload or make_jpeg(32, 32)).decode("ascii"),
                }
            }
        )
        return {"candidates": [{"content": {"parts": parts}, "finishReason": "STOP"}]}

    @staticmethod
    def text(text: str = "I can describe the outfit but cannot edit images.") -> Dict[str, Any]:
        return {"candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}]}

    @staticmethod
    def blocked(reason: str = "SAFETY") -> Dict[str, Any]:
        return {"promptFeedback": {"blockReason": reason}, "candidates": []}

    @staticmethod
    def empty() -> Dict[str, Any]:
        return {"candidates": [{"content": {"parts": []}, "finishReason": "MAX_TOKENS"}]}


class ScriptedProvider(Provider):
    """Replays a scripted list of responses; the last entry repeats."""

    name = "scripted"

    def __init__(self, responses: Sequence[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def generate_content(
        self, instruction: str, parts: Sequence[InlinePart], config: GenerationConfig
    ) -> Dict[str, Any]:
        self.calls.append({"instruction": instruction, "parts": list(parts), "config": config})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@dataclass
class Harness:
    orchestrator: TryOnOrchestrator
    provider: ScriptedProvider
    sleep: RecordingSleep
    ledger: UsageLedgerService
    cache: ResultCache
    fetched: List[str] = field(default_factory=list)


@pytest.fixture()
def engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


@pytest.fixture()
def session(session_factory: sessionmaker[Session]) -> Session:
    with session_factory() as session:
        yield session


@pytest.fixture()
def responses() -> type[GeminiResponses]:
    return GeminiResponses


@pytest.fixture()
def jpeg():
    return make_jpeg


@pytest.fixture()
def remote_images() -> Dict[str, bytes]:
    return {
        PRODUCT_URL: make_jpeg(1600, 1200, (30, 60, 200)),
        PRESET_URL: make_jpeg(900, 1400, (220, 190, 160)),
    }


@pytest.fixture()
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(tmp_path / "uploads", public_base_url="/uploads")


@pytest.fixture()
def preset(session: Session) -> PresetImage:
    preset = PresetImage(
        id="alex",
        name="Alex",
        image_url=PRESET_URL,
        gender="male",
        is_active=True,
        sort_order=0,
    )
    session.add(preset)
    session.commit()
    return preset


@pytest.fixture()
def product_url() -> str:
    return PRODUCT_URL


@pytest.fixture()
def build_harness(session: Session, storage: LocalStorage, remote_images: Dict[str, bytes]):
    def build(scripted: Sequence[Any], *, max_attempts: int = 3) -> Harness:
        fetched: List[str] = []

        def fetch(url: str) -> bytes:
            fetched.append(url)
            return remote_images[url]

        provider = ScriptedProvider(scripted)
        sleep = RecordingSleep()
        client = GenerationClient(
            provider,
            max_attempts=max_attempts,
            backoff_seconds=1.5,
            sleep=sleep,
            fetch=fetch,
        )
        ledger = UsageLedgerService(session)
        cache = ResultCache(session)
        orchestrator = TryOnOrchestrator(
            session,
            ledger=ledger,
            cache=cache,
            client=client,
            storage=storage,
            fetch=fetch,
        )
        return Harness(
            orchestrator=orchestrator,
            provider=provider,
            sleep=sleep,
            ledger=ledger,
            cache=cache,
            fetched=fetched,
        )

    return build


@dataclass
class ApiHarness:
    client: TestClient
    provider: ScriptedProvider
    storage: LocalStorage


@pytest.fixture()
def api(session_factory, storage: LocalStorage, remote_images: Dict[str, bytes]) -> ApiHarness:
    provider = ScriptedProvider([GeminiResponses.image()])
    generation_client = GenerationClient(
        provider, sleep=RecordingSleep(), fetch=remote_images.__getitem__
    )

    def override_get_db():
        with session_factory() as session:
            yield session

    def override_get_orchestrator(session: Session = Depends(get_db)) -> TryOnOrchestrator:
        return TryOnOrchestrator(
            session,
            ledger=UsageLedgerService(session),
            cache=ResultCache(session),
            client=generation_client,
            storage=storage,
            fetch=remote_images.__getitem__,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_generation_client] = lambda: generation_client
    app.dependency_overrides[get_object_storage] = lambda: storage
    app.dependency_overrides[get_orchestrator] = override_get_orchestrator
    try:
        yield ApiHarness(client=TestClient(app), provider=provider, storage=storage)
    finally:
        app.dependency_overrides.clear()
