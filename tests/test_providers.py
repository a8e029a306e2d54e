import asyncio
import json

import httpx
import pytest

from illustrate import RunContext, llm
from illustrate.generation import BODY_SYNTHESIS, HEADER_SYNTHESIS, generate_and_verify_image
from illustrate.llm import _call_llm, synthesize_image
from illustrate.planner import plan_image_placements
from illustrate.schemas import PlanImagePlacementsInput, SynthesisConfig

from conftest import make_image, make_images

HELLO_B64 = "aGVsbG8="  # b"hello"


class FakeHTTP:
    """Answers every request with the next scripted payload, recording requests."""

    def __init__(self, *payloads):
        self.payloads = list(payloads)
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        payload = self.payloads.pop(0) if len(self.payloads) > 1 else self.payloads[0]
        if isinstance(payload, bytes):
            return httpx.Response(200, content=payload, headers={"Content-Type": "image/png"})
        return httpx.Response(200, json=payload)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)

    def install(self, monkeypatch):
        real_client = httpx.AsyncClient

        def client(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(self.handler)
            return real_client(*args, **kwargs)

        monkeypatch.setattr(llm.httpx, "AsyncClient", client)
        return self


def text_config(provider: str, model: str = "test-model") -> dict:
    return {
        "provider": provider,
        "model": model,
        "temperature": None,
        "ollama_host": "http://ollama.test",
        "openai_api_key": "sk-test",
        "anthropic_api_key": "ak-test",
        "google_api_key": "g-test",
    }


def image_config(provider: str, image_model=None) -> dict:
    return {
        "provider": provider,
        "image_model": image_model,
        "openai_api_key": "sk-test",
        "google_api_key": "g-test",
        "sd_api_url": "http://sd.test",
    }


def call_text(config, images=None, json_mode=False):
    return asyncio.run(_call_llm("describe", config, max_tokens=50, json_mode=json_mode, images=images))


def synthesize(config, synthesis: SynthesisConfig = HEADER_SYNTHESIS):
    return asyncio.run(synthesize_image("a lighthouse", synthesis, config, "out.png"))


# =============================================================================
# TEXT / VISION PROVIDERS
# =============================================================================

def test_openai_chat_sends_images_as_data_uris(monkeypatch):
    http = FakeHTTP({"choices": [{"message": {"content": "a harbour"}}]}).install(monkeypatch)

    reply = call_text(text_config("openai"), images=[make_image("a.png")], json_mode=True)

    assert reply == "a harbour"
    body = http.body()
    content = body["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "describe"}
    assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert body["response_format"] == {"type": "json_object"}
    assert http.requests[0].headers["Authorization"] == "Bearer sk-test"


def test_anthropic_joins_text_blocks_after_images(monkeypatch):
    http = FakeHTTP({"content": [{"type": "text", "text": "calm "}, {"type": "text", "text": "sea"}]})
    http.install(monkeypatch)

    reply = call_text(text_config("anthropic"), images=[make_image("a.png")])

    assert reply == "calm sea"
    content = http.body()["messages"][0]["content"]
    assert content[0]["type"] == "image"
    assert content[0]["source"]["media_type"] == "image/png"
    assert content[-1] == {"type": "text", "text": "describe"}


def test_ollama_sends_raw_base64_images(monkeypatch):
    http = FakeHTTP({"message": {"content": "ok"}}).install(monkeypatch)

    reply = call_text(text_config("ollama"), images=[make_image("a.png")], json_mode=True)

    assert reply == "ok"
    body = http.body()
    assert body["messages"][0]["images"] == [make_image("a.png").b64]
    assert body["format"] == "json"
    assert str(http.requests[0].url) == "http://ollama.test/api/chat"


def test_gemini_sends_inline_images_and_schema(monkeypatch):
    http = FakeHTTP({"candidates": [{"content": {"parts": [{"text": "{}"}]}}]}).install(monkeypatch)

    reply = asyncio.run(_call_llm(
        "describe", text_config("gemini", "gemini-2.5-flash"), max_tokens=50, json_mode=True,
        response_schema={"type": "object", "properties": {"x": {"type": "string"}}},
        images=[make_image("a.png")],
    ))

    assert reply == "{}"
    body = http.body()
    assert body["contents"][0]["parts"][1]["inlineData"]["mimeType"] == "image/png"
    assert body["generationConfig"]["responseMimeType"] == "application/json"
    assert body["generationConfig"]["responseSchema"]["properties"]["x"] == {"type": "string"}


@pytest.mark.parametrize("provider, payload", [
    ("openai", {"choices": []}),
    ("openai", {}),
    ("openai", {"choices": [None]}),
    ("anthropic", {"content": []}),
    ("anthropic", {}),
    ("anthropic", {"content": "text"}),
    ("ollama", {}),
    ("ollama", {"message": None}),
    ("gemini", {"candidates": []}),
    ("gemini", {"candidates": [{"content": {}}]}),
    ("gemini", []),
])
def test_malformed_text_payloads_raise_value_error(monkeypatch, provider, payload):
    FakeHTTP(payload).install(monkeypatch)

    with pytest.raises(ValueError):
        call_text(text_config(provider))


# =============================================================================
# IMAGE SYNTHESIS
# =============================================================================

def test_imagen_returns_decoded_artifact(monkeypatch):
    http = FakeHTTP({"predictions": [{"bytesBase64Encoded": HELLO_B64, "mimeType": "image/png"}]})
    http.install(monkeypatch)

    image = synthesize(image_config("gemini", "imagen-4.0-generate-001"))

    assert image.filename == "out.png"
    assert image.data == b"hello"
    assert str(http.requests[0].url).endswith("imagen-4.0-generate-001:predict")
    assert http.body()["parameters"]["aspectRatio"] == "16:9"
    assert http.body()["parameters"]["sampleCount"] == 1


def test_gemini_native_image_skips_text_parts(monkeypatch):
    FakeHTTP({"candidates": [{"content": {"parts": [
        {"text": "Here you go"},
        {"inlineData": {"mimeType": "image/jpeg", "data": HELLO_B64}},
    ]}}]}).install(monkeypatch)

    image = synthesize(image_config("gemini", "gemini-3-pro-image-preview"))

    assert image.data == b"hello"
    assert image.mime_type == "image/jpeg"


def test_openai_images_request_matching_size(monkeypatch):
    http = FakeHTTP({"data": [{"b64_json": HELLO_B64}]}).install(monkeypatch)

    image = synthesize(image_config("openai", "gpt-image-1"), BODY_SYNTHESIS)

    assert image.data == b"hello"
    assert http.body()["size"] == "1536x1024"
    assert http.body()["n"] == 1


def test_stable_diffusion_uses_aspect_ratio_dimensions(monkeypatch):
    http = FakeHTTP({"images": [HELLO_B64]}).install(monkeypatch)

    image = synthesize(image_config("stable-diffusion"))

    assert image.data == b"hello"
    assert (http.body()["width"], http.body()["height"]) == (1792, 1024)


@pytest.mark.parametrize("provider, model, payload", [
    ("gemini", "imagen-4.0-generate-001", {}),
    ("gemini", "imagen-4.0-generate-001", {"predictions": []}),
    ("gemini", "imagen-4.0-generate-001", {"predictions": [{"raiFilteredReason": "blocked"}]}),
    ("gemini", "gemini-3-pro-image-preview", {"candidates": [{"content": {"parts": [{"text": "I can't"}]}}]}),
    ("gemini", "gemini-3-pro-image-preview", {"candidates": []}),
    ("openai", "gpt-image-1", {"data": []}),
    ("stable-diffusion", None, {"images": []}),
])
def test_synthesis_without_output_returns_none(monkeypatch, provider, model, payload):
    FakeHTTP(payload).install(monkeypatch)

    assert synthesize(image_config(provider, model)) is None


@pytest.mark.parametrize("provider, model, payload", [
    ("gemini", "imagen-4.0-generate-001", {"predictions": "x"}),
    ("gemini", "imagen-4.0-generate-001", {"predictions": [{"bytesBase64Encoded": 5}]}),
    ("gemini", "gemini-3-pro-image-preview", {"candidates": ["oops"]}),
    ("openai", "gpt-image-1", {"data": [1]}),
    ("stable-diffusion", None, {"images": 5}),
    ("stable-diffusion", None, []),
])
def test_malformed_synthesis_payloads_raise_value_error(monkeypatch, provider, model, payload):
    FakeHTTP(payload).install(monkeypatch)

    with pytest.raises(ValueError):
        synthesize(image_config(provider, model))


# =============================================================================
# SERVICE BOUNDARIES
# =============================================================================

def provider_ctx(provider: str) -> RunContext:
    return RunContext(
        secrets={
            "LLM_PROVIDER": provider,
            "LLM_MODEL": "test-model",
            "OPENAI_API_KEY": "sk-test",
            "ANTHROPIC_API_KEY": "ak-test",
            "IMAGE_PROVIDER": "placeholder",
        },
        use_environment=False,
    )


@pytest.mark.parametrize("provider, payload", [
    ("openai", {"choices": []}),
    ("anthropic", {"content": []}),
])
def test_empty_layout_reply_falls_back_to_programmatic(monkeypatch, provider, payload):
    FakeHTTP(payload).install(monkeypatch)
    ctx = provider_ctx(provider)
    images = make_images("h.png", "a.png", "b.png")

    result = asyncio.run(plan_image_placements(ctx, PlanImagePlacementsInput(
        article_title="Tides",
        content_blocks=[f"Paragraph {i}." for i in range(10)],
        images=images,
        check_header_suitability=False,
    )))

    assert result.strategy_source == "fallback_service_error"
    assert result.strategy.header_image_filename == "h.png"


def test_malformed_verification_reply_is_retried(monkeypatch):
    monkeypatch.delenv("LLM_DEV_CACHE", raising=False)
    verdict = json.dumps({"has_illegible_text": False, "is_relevant": True})
    http = FakeHTTP(
        b"png-bytes",                                            # placeholder synthesis
        {"choices": []},                                         # verification, malformed
        {"choices": [{"message": {"content": "a clearer prompt"}}]},  # refinement
        b"png-bytes",                                            # placeholder synthesis
        {"choices": [{"message": {"content": verdict}}]},        # verification, passes
    ).install(monkeypatch)
    ctx = provider_ctx("openai")

    image = asyncio.run(generate_and_verify_image(ctx, "a lighthouse", BODY_SYNTHESIS, filename="x.png"))

    assert image.data == b"png-bytes"
    assert ctx.decisions() == ["image_attempt_failed", "image_accepted"]
    assert len(http.requests) == 5
