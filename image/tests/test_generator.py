from __future__ import annotations

import base64
import io

import httpx
import pytest
from PIL import Image

from conftest import RecordingSleep, ScriptedProvider
from image.generator import (
    FailureKind,
    GeminiProvider,
    GenerationClient,
    GenerationConfig,
    GenerationError,
    InlinePart,
    ProviderRejected,
    ProviderUnavailable,
    StubProvider,
    build_provider,
    classify_response,
)
from shared.config import Settings

SUBJECT = "data:image/png;base64," + base64.b64encode(b"subject").decode("ascii")
GARMENT = base64.b64encode(b"garment").decode("ascii")


def _client(scripted, max_attempts: int = 3):
    provider = ScriptedProvider(scripted)
    sleep = RecordingSleep()
    client = GenerationClient(provider, max_attempts=max_attempts, backoff_seconds=1.5, sleep=sleep)
    return client, provider, sleep


def test_persistent_text_only_uses_every_attempt(responses) -> None:
    client, provider, sleep = _client([responses.text()])

    with pytest.raises(GenerationError) as excinfo:
        client.generate(SUBJECT, GARMENT, "Linen Shirt")

    assert excinfo.value.kind is FailureKind.TEXT_ONLY
    assert excinfo.value.attempts == 3
    assert len(provider.calls) == 3
    assert sleep.delays == [1.5, 3.0]


def test_safety_block_is_never_retried(responses) -> None:
    client, provider, sleep = _client([responses.blocked()])

    with pytest.raises(GenerationError) as excinfo:
        client.generate(SUBJECT, GARMENT, "Linen Shirt")

    assert excinfo.value.kind is FailureKind.BLOCKED
    assert excinfo.value.attempts == 1
    assert len(provider.calls) == 1
    assert sleep.delays == []


def test_no_image_returns_immediately(responses) -> None:
    client, provider, _ = _client([responses.empty()])

    with pytest.raises(GenerationError) as excinfo:
        client.generate(SUBJECT, GARMENT, "Linen Shirt")

    assert excinfo.value.kind is FailureKind.NO_IMAGE
    assert len(provider.calls) == 1


def test_text_text_image_succeeds_on_third_attempt(responses, jpeg) -> None:
    payload = jpeg(40, 40)
    client, provider, sleep = _client([responses.text(), responses.text(), responses.image(payload)])

    result = client.generate(SUBJECT, GARMENT, "Linen Shirt")

    assert result.attempts == 3
    assert result.image_bytes == payload
    assert result.mime_type == "image/jpeg"
    assert sleep.delays == [1.5, 3.0]


def test_transport_failures_are_retried_then_reported(responses) -> None:
    client, provider, sleep = _client([ProviderUnavailable("HTTP 503")])

    with pytest.raises(GenerationError) as excinfo:
        client.generate(SUBJECT, GARMENT, "Linen Shirt")

    assert excinfo.value.kind is FailureKind.PROVIDER_ERROR
    assert len(provider.calls) == 3
    assert sleep.delays == [1.5, 3.0]


def test_transport_failure_then_image(responses) -> None:
    client, provider, _ = _client([httpx.ConnectTimeout("slow"), responses.image()])

    result = client.generate(SUBJECT, GARMENT, "Linen Shirt")

    assert result.attempts == 2


def test_rejection_is_not_retried() -> None:
    client, provider, sleep = _client([ProviderRejected("HTTP 400: bad request")])

    with pytest.raises(GenerationError) as excinfo:
        client.generate(SUBJECT, GARMENT, "Linen Shirt")

    assert excinfo.value.kind is FailureKind.PROVIDER_ERROR
    assert excinfo.value.attempts == 1
    assert sleep.delays == []


def test_inputs_are_converted_to_inline_parts(responses) -> None:
    client, provider, _ = _client([responses.image()])

    client.generate(SUBJECT, GARMENT, "Linen Shirt")

    parts = provider.calls[0]["parts"]
    assert parts[0] == InlinePart(mime_type="image/png", data=base64.b64encode(b"subject").decode("ascii"))
    assert parts[1] == InlinePart(mime_type="image/jpeg", data=GARMENT)
    assert '"Linen Shirt"' in provider.calls[0]["instruction"]


def test_remote_inputs_are_fetched(responses) -> None:
    fetched = []

    def fetch(url: str) -> bytes:
        fetched.append(url)
        return b"remote-bytes"

    provider = ScriptedProvider([responses.image()])
    client = GenerationClient(provider, sleep=RecordingSleep(), fetch=fetch)

    client.generate("https://cdn.example.com/a.jpg", "//cdn.example.com/b.jpg", "Shirt")

    assert fetched == ["https://cdn.example.com/a.jpg", "//cdn.example.com/b.jpg"]
    assert provider.calls[0]["parts"][0].data == base64.b64encode(b"remote-bytes").decode("ascii")


def test_classification_priorities(responses) -> None:
    blocked_with_image = responses.image()
    blocked_with_image["candidates"][0]["finishReason"] = "IMAGE_SAFETY"
    assert classify_response(blocked_with_image).kind is FailureKind.BLOCKED

    image_with_text = classify_response(responses.image(text="Here you go"))
    assert image_with_text.kind is None
    assert image_with_text.text == "Here you go"

    snake_case = {
        "candidates": [
            {"content": {"parts": [{"inline_data": {"mime_type": "image/png", "data": "aGVsbG8="}}]}}
        ]
    }
    outcome = classify_response(snake_case)
    assert outcome.kind is None
    assert outcome.mime_type == "image/png"
    assert outcome.image_bytes == b"hello"

    assert classify_response({}).kind is FailureKind.NO_IMAGE


def test_stub_provider_returns_collage(jpeg) -> None:
    parts = [
        InlinePart("image/jpeg", base64.b64encode(jpeg(300, 400)).decode("ascii")),
        InlinePart("image/jpeg", "not-an-image"),
    ]

    payload = StubProvider().generate_content("compose", parts, GenerationConfig())
    outcome = classify_response(payload)

    assert outcome.kind is None
    assert Image.open(io.BytesIO(outcome.image_bytes)).size == (1024, 1024)


def test_gemini_payload_shape() -> None:
    provider = GeminiProvider(api_key="key", model="gemini-2.5-flash-image", endpoint="https://example.test/v1beta/")
    payload = provider.build_payload(
        "compose", [InlinePart("image/jpeg", "AAA")], GenerationConfig(temperature=0.2, max_output_tokens=8192)
    )

    assert payload["contents"][0]["parts"][0] == {"text": "compose"}
    assert payload["contents"][0]["parts"][1] == {"inline_data": {"mime_type": "image/jpeg", "data": "AAA"}}
    assert payload["generationConfig"]["candidateCount"] == 1
    assert payload["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]
    assert provider.endpoint == "https://example.test/v1beta"


def test_gemini_status_mapping() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-goog-api-key"] == "key"
        assert request.url.path.endswith("/models/gemini-2.5-flash-image:generateContent")
        status = {"busy": 503, "bad": 400}.get(request.headers.get("x-case", ""), 200)
        return httpx.Response(status, json={"candidates": []})

    provider = GeminiProvider(api_key="key", model="gemini-2.5-flash-image", endpoint="https://example.test/v1beta")
    provider._client = httpx.Client(transport=httpx.MockTransport(handler))

    assert provider.generate_content("compose", [], GenerationConfig()) == {"candidates": []}

    provider.client.headers["x-case"] = "busy"
    with pytest.raises(ProviderUnavailable):
        provider.generate_content("compose", [], GenerationConfig())

    provider.client.headers["x-case"] = "bad"
    with pytest.raises(ProviderRejected):
        provider.generate_content("compose", [], GenerationConfig())

    provider.close()
    assert provider._client is None


def test_missing_key_falls_back_to_stub() -> None:
    assert isinstance(build_provider(Settings(gemini_api_key="")), StubProvider)
    assert isinstance(build_provider(Settings(gemini_api_key="k", provider="gemini")), GeminiProvider)


def test_undecodable_image_data_is_not_a_success() -> None:
    garbled = {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/jpeg", "data": "!!!!"}}]}}]}

    assert classify_response(garbled).kind is FailureKind.NO_IMAGE

    client, provider, sleep = _client([garbled])
    with pytest.raises(GenerationError) as excinfo:
        client.generate(SUBJECT, GARMENT, "Linen Shirt")

    assert excinfo.value.kind is FailureKind.NO_IMAGE
    assert excinfo.value.attempts == 1
    assert sleep.delays == []


def test_non_json_success_body_is_retried_as_provider_error() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})

    provider = GeminiProvider(api_key="key", model="gemini-2.5-flash-image", endpoint="https://example.test/v1beta")
    provider._client = httpx.Client(transport=httpx.MockTransport(handler))
    sleep = RecordingSleep()
    client = GenerationClient(provider, max_attempts=3, backoff_seconds=1.5, sleep=sleep)

    with pytest.raises(GenerationError) as excinfo:
        client.generate(SUBJECT, GARMENT, "Linen Shirt")

    assert excinfo.value.kind is FailureKind.PROVIDER_ERROR
    assert excinfo.value.attempts == 3
    assert "non-JSON" in excinfo.value.diagnostic
    assert len(calls) == 3
    assert sleep.delays == [1.5, 3.0]


def test_json_body_that_is_not_an_object_is_unavailable() -> None:
    provider = GeminiProvider(api_key="key", model="gemini-2.5-flash-image", endpoint="https://example.test/v1beta")
    provider._client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[1, 2])))

    with pytest.raises(ProviderUnavailable):
        provider.generate_content("compose", [], GenerationConfig())


def test_unusable_reference_fails_before_any_provider_call(responses) -> None:
    client, provider, _ = _client([responses.image()])

    with pytest.raises(GenerationError) as excinfo:
        client.generate("/presets/1-male-alex.jpg", GARMENT, "Linen Shirt")

    assert excinfo.value.kind is FailureKind.PROVIDER_ERROR
    assert excinfo.value.attempts == 0
    assert provider.calls == []
