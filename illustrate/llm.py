"""
Generative service adapters for the illustration engine.

- call_llm_validated: structured (JSON) completion validated with Pydantic
- call_llm_json: structured completion returned as raw, untrusted JSON
- call_llm_text: plain text completion
- synthesize_image: one image from a prompt, or None when the model declines

Text and vision calls accept images, sent inline to the provider.
"""
import os
import re
import hashlib
import asyncio
import structlog
import httpx
import json

from pathlib import Path
from typing import Optional, TypeVar, Type, List, Any, Sequence
from pydantic import BaseModel, ValidationError

from .schemas import (
    LLMConfig, ImageConfig, SynthesisConfig, ImageArtifact,
    resolve_model, IMAGE_MODEL_REGISTRY,
)

logger = structlog.get_logger()

# Type variable for generic Pydantic model validation
T = TypeVar("T", bound=BaseModel)

DEFAULT_LLM_PROVIDER = "gemini"
DEFAULT_LLM_MODEL = "gemini-3-pro-preview"
DEFAULT_IMAGE_PROVIDER = "gemini"
DEFAULT_IMAGE_MODEL = "imagen-4.0-generate-001"

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"

# What indexing into an unexpected provider payload raises
PAYLOAD_ERRORS = (KeyError, IndexError, TypeError, AttributeError)


# =============================================================================
# DEV CACHE
# =============================================================================
# Replays validated responses while iterating on prompts locally.
# LLM_DEV_CACHE=true turns it on; delete the directory to reset.

LLM_DEV_CACHE_DIR = Path("/tmp/illustrate_dev_cache")


def _dev_cache_path(namespace: str, key_data: dict) -> Optional[Path]:
    """Cache file for a request, or None when the dev cache is off."""
    if os.environ.get("LLM_DEV_CACHE", "").lower() not in ("true", "1", "yes"):
        return None
    digest = hashlib.sha256(json.dumps(key_data, sort_keys=True, default=str).encode()).hexdigest()
    return LLM_DEV_CACHE_DIR / f"{namespace}_{digest[:16]}.json"


def _read_dev_cache(path: Optional[Path]) -> Optional[dict]:
    if path is None or not path.exists():
        return None
    try:
        payload = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        logger.warning("llm_dev_cache_read_error", path=str(path), error=str(e))
        return None
    logger.info("llm_dev_cache_hit", path=path.name)
    return payload


def _write_dev_cache(path: Optional[Path], payload: dict) -> None:
    if path is None:
        return
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2, default=str))
    except (OSError, TypeError) as e:
        logger.warning("llm_dev_cache_write_error", path=str(path), error=str(e))


def _image_fingerprints(images: Optional[Sequence[ImageArtifact]]) -> List[str]:
    """Images are part of the cache key by name and content hash."""
    return [
        f"{img.filename}:{hashlib.sha256(img.data).hexdigest()[:16]}"
        for img in (images or [])
    ]


# =============================================================================
# CONFIGURATION
# =============================================================================

def _get_llm_config(ctx, llm_config: Optional[LLMConfig] = None) -> dict:
    """
    Get LLM configuration with cascading priority.

    Resolution order (first non-None wins):
    1. Node params (llm_config.model - user-friendly name like "Gemini 3 Pro")
    2. Secrets / environment (LLM_PROVIDER + LLM_MODEL)
    3. Defaults (gemini/gemini-3-pro-preview)
    """
    provider = None
    model = None
    temperature = None

    # Handle both dict and Pydantic model
    if llm_config:
        model_value = llm_config.get("model") if isinstance(llm_config, dict) else llm_config.model
        if model_value:
            resolved_provider, resolved_model = resolve_model(model_value)
            if resolved_provider:
                provider = resolved_provider
                model = resolved_model
        # Temperature can be 0, so check for None explicitly
        temp_value = llm_config.get("temperature") if isinstance(llm_config, dict) else llm_config.temperature
        if temp_value is not None:
            temperature = temp_value

    if not provider:
        provider = ctx.get_secret("LLM_PROVIDER") or DEFAULT_LLM_PROVIDER
    if not model:
        model = ctx.get_secret("LLM_MODEL") or DEFAULT_LLM_MODEL

    return {
        "provider": provider,
        "model": model,
        "temperature": temperature,  # None means use provider default
        "ollama_host": ctx.get_secret("OLLAMA_HOST") or "http://localhost:11434",
        "openai_api_key": ctx.get_secret("OPENAI_API_KEY"),
        "anthropic_api_key": ctx.get_secret("ANTHROPIC_API_KEY"),
        "google_api_key": ctx.get_secret("GOOGLE_API_KEY"),
    }


def _get_image_config(ctx, image_config: Optional[ImageConfig] = None) -> dict:
    """Get image synthesis configuration: params, then secrets, then defaults."""
    config = {
        "provider": ctx.get_secret("IMAGE_PROVIDER") or DEFAULT_IMAGE_PROVIDER,
        "image_model": ctx.get_secret("IMAGE_MODEL") or DEFAULT_IMAGE_MODEL,
        "openai_api_key": ctx.get_secret("OPENAI_API_KEY"),
        "google_api_key": ctx.get_secret("GOOGLE_API_KEY"),
        "sd_api_url": ctx.get_secret("SD_API_URL") or "http://localhost:7860",  # Automatic1111
    }

    if image_config:
        if image_config.model:
            provider, model = resolve_model(image_config.model, IMAGE_MODEL_REGISTRY)
            if provider:
                config["provider"] = provider
                if model:
                    config["image_model"] = model
            else:
                logger.warning(
                    "image_model_not_in_registry",
                    input_model=image_config.model,
                    available_models=list(IMAGE_MODEL_REGISTRY.keys()),
                )
        if image_config.provider:
            config["provider"] = image_config.provider

    return config


# =============================================================================
# PYDANTIC-VALIDATED LLM CALLS
# =============================================================================

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def _strip_code_fences(text: str) -> str:
    """Providers without a JSON mode sometimes wrap JSON in a code fence."""
    text = (text or "").strip()
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


CORRECTION_SUFFIX = """

Your previous response was invalid. It failed validation with:

{errors}

Reply again with JSON that satisfies the schema and nothing else."""


async def call_llm_validated(
    prompt: str,
    config: dict,
    response_model: Type[T],
    images: Optional[Sequence[ImageArtifact]] = None,
    max_tokens: int = 2000,
    max_retries: int = 2,
) -> T:
    """
    Structured completion parsed into `response_model`.

    A reply that fails validation is retried with the validation errors
    appended to the prompt. max_retries=0 makes it a single judgment.

    Raises:
        RuntimeError: If no reply validates
    """
    cache_path = _dev_cache_path("llm", {
        "prompt": prompt,
        "model": config.get("model", "unknown"),
        "images": _image_fingerprints(images),
    })
    cached = _read_dev_cache(cache_path)
    if cached:
        try:
            return response_model.model_validate(cached)
        except ValidationError as e:
            logger.warning("llm_dev_cache_schema_mismatch", error=str(e)[:200])

    schema = response_model.model_json_schema()
    attempts = max_retries + 1
    current_prompt = prompt

    for attempt in range(1, attempts + 1):
        response = await _call_llm(
            current_prompt,
            config,
            max_tokens=max_tokens,
            json_mode=True,
            response_schema=schema,
            temperature=config.get("temperature"),
            images=images,
        )
        try:
            validated = response_model.model_validate_json(_strip_code_fences(response))
        except ValidationError as e:
            if attempt == attempts:
                logger.error(
                    "llm_validation_failed_exhausted",
                    attempts=attempts,
                    error=str(e),
                    response_preview=(response or "EMPTY")[:500],
                )
                raise RuntimeError(
                    f"LLM response validation failed after {attempts} attempts: {e}"
                ) from e
            logger.warning("llm_validation_failed_retrying", attempt=attempt, max_retries=max_retries, error=str(e))
            current_prompt = prompt + CORRECTION_SUFFIX.format(errors=e.json())
            continue

        if attempt > 1:
            logger.info("llm_validation_retry_succeeded", attempt=attempt)
        _write_dev_cache(cache_path, validated.model_dump())
        return validated

    raise RuntimeError("max_retries must be >= 0")


async def call_llm_json(
    prompt: str,
    config: dict,
    response_model: Type[BaseModel],
    images: Optional[Sequence[ImageArtifact]] = None,
    max_tokens: int = 2000,
) -> Any:
    """
    Structured completion returned as parsed but unvalidated JSON.

    The schema constrains the provider where it can; the caller owns
    validation of whatever comes back.

    Raises:
        json.JSONDecodeError: If the response isn't JSON at all
    """
    response = await _call_llm(
        prompt,
        config,
        max_tokens=max_tokens,
        json_mode=True,
        response_schema=response_model.model_json_schema(),
        temperature=config.get("temperature"),
        images=images,
    )
    return json.loads(_strip_code_fences(response))


async def call_llm_text(
    prompt: str,
    config: dict,
    max_tokens: int = 1000,
) -> str:
    """Plain text completion, stripped."""
    response = await _call_llm(
        prompt,
        config,
        max_tokens=max_tokens,
        json_mode=False,
        temperature=config.get("temperature"),
    )
    return (response or "").strip()


# =============================================================================
# LLM Provider Implementations
# =============================================================================

async def _call_llm(
    prompt: str,
    config: dict,
    max_tokens: int = 2000,
    json_mode: bool = False,
    response_schema: Optional[dict] = None,
    temperature: Optional[float] = None,
    images: Optional[Sequence[ImageArtifact]] = None,
) -> str:
    """Call the configured LLM provider."""
    provider = config["provider"]
    images = list(images or [])

    if provider == "openai":
        return await _call_openai(prompt, config, max_tokens, json_mode, temperature, images)
    elif provider == "anthropic":
        return await _call_anthropic(prompt, config, max_tokens, temperature, images)
    elif provider == "gemini":
        return await _call_gemini(prompt, config, max_tokens, json_mode, response_schema, temperature, images)
    elif provider == "ollama":
        return await _call_ollama(prompt, config, max_tokens, json_mode, temperature, images)
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")


async def _call_openai(
    prompt: str,
    config: dict,
    max_tokens: int,
    json_mode: bool,
    temperature: Optional[float] = None,
    images: Optional[List[ImageArtifact]] = None,
) -> str:
    """Call OpenAI chat completions, with images as data URIs."""
    api_key = config["openai_api_key"]
    if not api_key:
        raise ValueError("OPENAI_API_KEY not set")

    content: Any = prompt
    if images:
        content = [{"type": "text", "text": prompt}] + [
            {"type": "image_url", "image_url": {"url": img.data_uri}}
            for img in images
        ]

    request_body = {
        "model": config["model"],
        "messages": [{"role": "user", "content": content}],
        "max_tokens": max_tokens,
    }

    if json_mode:
        request_body["response_format"] = {"type": "json_object"}

    if temperature is not None:
        request_body["temperature"] = temperature

    async with httpx.AsyncClient(timeout=120) as client:
        response = await client.post(
            "https://api.openai.com/v1/chat/completions",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json=request_body,
        )
        response.raise_for_status()
        data = response.json()

    try:
        return data["choices"][0]["message"]["content"] or ""
    except PAYLOAD_ERRORS as e:
        logger.error("openai_parse_error", error=str(e), full_response=data)
        raise ValueError(f"Failed to parse OpenAI response: {data}") from e


async def _call_anthropic(
    prompt: str,
    config: dict,
    max_tokens: int,
    temperature: Optional[float] = None,
    images: Optional[List[ImageArtifact]] = None,
) -> str:
    """Call Anthropic messages API, with images as base64 blocks."""
    api_key = config["anthropic_api_key"]
    if not api_key:
        raise ValueError("ANTHROPIC_API_KEY not set")

    content: Any = prompt
    if images:
        content = [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": img.mime_type, "data": img.b64},
            }
            for img in images
        ] + [{"type": "text", "text": prompt}]

    request_body = {
        "model": config["model"],
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": content}],
    }

    if temperature is not None:
        request_body["temperature"] = temperature

    async with httpx.AsyncClient(timeout=120) as client:
        response = await client.post(
            "https://api.anthropic.com/v1/messages",
            headers={
                "x-api-key": api_key,
                "Content-Type": "application/json",
                "anthropic-version": "2023-06-01",
            },
            json=request_body,
        )
        response.raise_for_status()
        data = response.json()

    try:
        texts = [block["text"] for block in data["content"] if block.get("type") == "text"]
    except PAYLOAD_ERRORS as e:
        logger.error("anthropic_parse_error", error=str(e), full_response=data)
        raise ValueError(f"Failed to parse Anthropic response: {data}") from e
    if not texts:
        raise ValueError(f"Anthropic response has no text blocks: {data}")
    return "".join(texts)


async def _call_ollama(
    prompt: str,
    config: dict,
    max_tokens: int,
    json_mode: bool = False,
    temperature: Optional[float] = None,
    images: Optional[List[ImageArtifact]] = None,
) -> str:
    """Call Ollama API using the chat endpoint."""
    ollama_host = config["ollama_host"]
    model = config["model"]

    logger.info(
        "calling_ollama",
        host=ollama_host,
        model=model,
        prompt_len=len(prompt),
        json_mode=json_mode,
        image_count=len(images or []),
    )

    message = {"role": "user", "content": prompt}
    if images:
        message["images"] = [img.b64 for img in images]

    request_body = {
        "model": model,
        "messages": [message],
        "stream": False,
        "options": {
            "num_predict": max_tokens,
        },
    }

    if temperature is not None:
        request_body["options"]["temperature"] = temperature

    if json_mode:
        request_body["format"] = "json"

    async with httpx.AsyncClient(timeout=300) as client:
        response = await client.post(
            f"{ollama_host}/api/chat",
            json=request_body,
        )
        response.raise_for_status()
        data = response.json()

    try:
        content = data["message"]["content"]
    except PAYLOAD_ERRORS as e:
        logger.error("ollama_parse_error", error=str(e), full_response=data)
        raise ValueError(f"Failed to parse Ollama response: {data}") from e
    if not content:
        logger.error("ollama_empty_response", full_response=data)
    return content or ""


class _UnsupportedSchema(Exception):
    pass


# Keys Gemini's responseSchema understands; everything else is dropped
_GEMINI_SCHEMA_KEYS = ("type", "description", "enum", "required")


def _convert_pydantic_schema_to_gemini(pydantic_schema: dict) -> dict | None:
    """
    Reduce a Pydantic JSON schema to the subset Gemini's responseSchema takes.

    `$ref`s into `$defs` are inlined and titles dropped. Dict-valued fields
    (additionalProperties) have no Gemini equivalent, so those schemas
    return None and the request goes out without one.

    See: https://ai.google.dev/gemini-api/docs/structured-output
    """
    defs = pydantic_schema.get("$defs", {})

    def simplify(schema: dict) -> dict:
        ref = schema.get("$ref", "")
        if ref:
            name = ref.rpartition("/")[2]
            return simplify(defs[name]) if ref.startswith("#/$defs/") and name in defs else {"type": "object"}
        if "additionalProperties" in schema:
            raise _UnsupportedSchema()

        result = {key: schema[key] for key in _GEMINI_SCHEMA_KEYS if key in schema}
        if "properties" in schema:
            result["properties"] = {name: simplify(sub) for name, sub in schema["properties"].items()}
        if "items" in schema:
            result["items"] = simplify(schema["items"])
        return result

    try:
        return simplify(pydantic_schema)
    except _UnsupportedSchema:
        return None


async def _post_gemini(url: str, api_key: str, request_body: dict, timeout: int = 120) -> dict:
    """POST to a Gemini endpoint, backing off on 429s."""
    max_retries = 3
    for attempt in range(max_retries + 1):
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                url,
                headers={
                    "Content-Type": "application/json",
                    "x-goog-api-key": api_key,
                },
                json=request_body,
            )

        if response.status_code == 429 and attempt < max_retries:
            wait_time = 2 ** (attempt + 1)
            logger.warning(
                "gemini_rate_limited_retrying",
                attempt=attempt + 1,
                max_retries=max_retries,
                wait_time=wait_time,
            )
            await asyncio.sleep(wait_time)
            continue

        response.raise_for_status()
        return response.json()

    raise RuntimeError("Gemini rate limit persisted after backoff")


async def _call_gemini(
    prompt: str,
    config: dict,
    max_tokens: int,
    json_mode: bool = False,
    response_schema: Optional[dict] = None,
    temperature: Optional[float] = None,
    images: Optional[List[ImageArtifact]] = None,
) -> str:
    """
    Call Google Gemini generateContent, with images as inlineData parts.

    Thinking models get a larger output budget since reasoning tokens count
    against it.
    """
    api_key = config["google_api_key"]
    if not api_key:
        raise ValueError("GOOGLE_API_KEY not set")

    model = config["model"]

    is_thinking_model = "2.5" in model or "3-pro" in model or "thinking" in model.lower()
    effective_max_tokens = max(max_tokens * 4, 8000) if is_thinking_model else max_tokens

    # Lower temperature for structured judgments, higher for creative text
    if temperature is not None:
        effective_temperature = temperature
    else:
        effective_temperature = 0.2 if json_mode else 0.7

    logger.info(
        "calling_gemini",
        model=model,
        prompt_len=len(prompt),
        json_mode=json_mode,
        image_count=len(images or []),
        has_response_schema=response_schema is not None,
        max_tokens_effective=effective_max_tokens,
        temperature=effective_temperature,
    )

    parts = [{"text": prompt}]
    for img in images or []:
        parts.append({"inlineData": {"mimeType": img.mime_type, "data": img.b64}})

    request_body = {
        "contents": [{"parts": parts}],
        "generationConfig": {
            "maxOutputTokens": effective_max_tokens,
            "temperature": effective_temperature,
        },
    }

    if json_mode:
        request_body["generationConfig"]["responseMimeType"] = "application/json"

        if response_schema:
            gemini_schema = _convert_pydantic_schema_to_gemini(response_schema)
            if gemini_schema:
                request_body["generationConfig"]["responseSchema"] = gemini_schema
            else:
                logger.info("gemini_skipping_response_schema", reason="schema contains unsupported features")

    data = await _post_gemini(f"{GEMINI_API_BASE}/{model}:generateContent", api_key, request_body)

    try:
        content = data["candidates"][0]["content"]["parts"][0]["text"]
        logger.info("gemini_response", content_len=len(content), content_preview=content[:200] if content else "EMPTY")
        return content
    except PAYLOAD_ERRORS as e:
        logger.error("gemini_parse_error", error=str(e), full_response=data)
        raise ValueError(f"Failed to parse Gemini response: {data}") from e


# =============================================================================
# IMAGE SYNTHESIS
# =============================================================================

# Output sizes per aspect ratio for providers that take pixel dimensions
ASPECT_RATIO_SIZES = {
    "16:9": (1792, 1024),
    "4:3": (1536, 1152),
    "1:1": (1024, 1024),
    "3:4": (1152, 1536),
    "9:16": (1024, 1792),
}

# Closest size each OpenAI image model accepts
OPENAI_IMAGE_SIZES = {
    "dall-e-3": {"16:9": "1792x1024", "4:3": "1792x1024", "1:1": "1024x1024", "3:4": "1024x1792", "9:16": "1024x1792"},
    "gpt-image-1": {"16:9": "1536x1024", "4:3": "1536x1024", "1:1": "1024x1024", "3:4": "1024x1536", "9:16": "1024x1536"},
}

MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


def extension_for(mime_type: str) -> str:
    return MIME_EXTENSIONS.get(mime_type, "png")


async def synthesize_image(
    prompt: str,
    synthesis: SynthesisConfig,
    config: dict,
    filename: str,
) -> Optional[ImageArtifact]:
    """
    Generate one image with the configured provider.

    Returns None when the provider answers without an image (safety
    filtering, refusal); that is an expected outcome, not an error.

    Supported providers:
    - gemini: Imagen models via :predict, image-capable Gemini models via generateContent
    - openai: gpt-image-1 / DALL-E 3
    - stable-diffusion: Local Automatic1111 API
    - placeholder: placehold.co image (for development)
    """
    provider = config["provider"]

    if provider == "gemini":
        model = config.get("image_model") or DEFAULT_IMAGE_MODEL
        if model.startswith("imagen"):
            return await _synthesize_imagen(prompt, synthesis, config, filename)
        return await _synthesize_gemini_native(prompt, synthesis, config, filename)
    elif provider == "openai":
        return await _synthesize_openai(prompt, synthesis, config, filename)
    elif provider == "stable-diffusion":
        return await _synthesize_stable_diffusion(prompt, synthesis, config, filename)
    elif provider == "placeholder":
        return await _synthesize_placeholder(prompt, synthesis, filename)
    else:
        raise ValueError(f"Unknown image provider: {provider}")


async def _synthesize_imagen(
    prompt: str,
    synthesis: SynthesisConfig,
    config: dict,
    filename: str,
) -> Optional[ImageArtifact]:
    """Imagen :predict endpoint. Filtered prompts come back with no predictions."""
    api_key = config["google_api_key"]
    if not api_key:
        raise ValueError("GOOGLE_API_KEY not set")

    model = config.get("image_model") or DEFAULT_IMAGE_MODEL
    request_body = {
        "instances": [{"prompt": prompt}],
        "parameters": {
            "sampleCount": synthesis.image_count,
            "aspectRatio": synthesis.aspect_ratio,
            "outputOptions": {"mimeType": synthesis.output_mime_type},
        },
    }

    data = await _post_gemini(f"{GEMINI_API_BASE}/{model}:predict", api_key, request_body)

    try:
        predictions = [p for p in data.get("predictions") or [] if p.get("bytesBase64Encoded")]
    except PAYLOAD_ERRORS as e:
        logger.error("imagen_parse_error", error=str(e), full_response=data)
        raise ValueError(f"Failed to parse Imagen response: {data}") from e
    if not predictions:
        logger.warning("imagen_no_output", model=model, prompt=prompt[:80])
        return None

    prediction = predictions[0]
    logger.info("imagen_image_generated", model=model, prompt=prompt[:50])
    return ImageArtifact.from_b64(
        filename,
        prediction["bytesBase64Encoded"],
        prediction.get("mimeType") or synthesis.output_mime_type,
    )


async def _synthesize_gemini_native(
    prompt: str,
    synthesis: SynthesisConfig,
    config: dict,
    filename: str,
) -> Optional[ImageArtifact]:
    """Image-capable Gemini models answer generateContent with inlineData parts."""
    api_key = config["google_api_key"]
    if not api_key:
        raise ValueError("GOOGLE_API_KEY not set")

    model = config["image_model"]
    request_body = {
        "contents": [{"parts": [{"text": f"Generate an image: {prompt}"}]}],
        "generationConfig": {
            "responseModalities": ["TEXT", "IMAGE"],
            "imageConfig": {"aspectRatio": synthesis.aspect_ratio},
        },
    }

    data = await _post_gemini(f"{GEMINI_API_BASE}/{model}:generateContent", api_key, request_body)

    try:
        inline = _first_inline_image(data)
    except PAYLOAD_ERRORS as e:
        logger.error("gemini_image_parse_error", error=str(e), full_response=data)
        raise ValueError(f"Failed to parse Gemini image response: {data}") from e

    if inline is None:
        logger.warning("gemini_image_no_output", model=model, prompt=prompt[:80])
        return None

    logger.info("gemini_image_generated", model=model, prompt=prompt[:50])
    return ImageArtifact.from_b64(
        filename,
        inline["data"],
        inline.get("mimeType") or synthesis.output_mime_type,
    )


def _first_inline_image(data: dict) -> Optional[dict]:
    for candidate in data.get("candidates") or []:
        for part in (candidate.get("content") or {}).get("parts") or []:
            inline = part.get("inlineData")
            if inline and inline.get("data"):
                return inline
    return None


async def _synthesize_openai(
    prompt: str,
    synthesis: SynthesisConfig,
    config: dict,
    filename: str,
) -> Optional[ImageArtifact]:
    """OpenAI images API, asking for base64 payloads."""
    api_key = config["openai_api_key"]
    if not api_key:
        raise ValueError("OPENAI_API_KEY not set")

    model = config.get("image_model") or "gpt-image-1"
    if not model.startswith(("dall-e", "gpt-image")):
        model = "gpt-image-1"

    sizes = OPENAI_IMAGE_SIZES.get(model, OPENAI_IMAGE_SIZES["gpt-image-1"])
    request_body = {
        "model": model,
        "prompt": prompt,
        "n": synthesis.image_count,
        "size": sizes.get(synthesis.aspect_ratio, "1024x1024"),
    }
    if model.startswith("dall-e"):
        request_body["response_format"] = "b64_json"
    else:
        request_body["output_format"] = extension_for(synthesis.output_mime_type).replace("jpg", "jpeg")

    async with httpx.AsyncClient(timeout=120) as client:
        response = await client.post(
            "https://api.openai.com/v1/images/generations",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json=request_body,
        )
        response.raise_for_status()
        data = response.json()

    try:
        items = [item for item in data.get("data") or [] if item.get("b64_json")]
    except PAYLOAD_ERRORS as e:
        logger.error("openai_image_parse_error", error=str(e), full_response=data)
        raise ValueError(f"Failed to parse OpenAI image response: {data}") from e
    if not items:
        logger.warning("openai_image_no_output", model=model, prompt=prompt[:80])
        return None

    # DALL-E 3 always returns PNG
    mime_type = "image/png" if model.startswith("dall-e") else synthesis.output_mime_type
    logger.info("openai_image_generated", model=model, prompt=prompt[:50])
    return ImageArtifact.from_b64(filename, items[0]["b64_json"], mime_type)


async def _synthesize_stable_diffusion(
    prompt: str,
    synthesis: SynthesisConfig,
    config: dict,
    filename: str,
) -> Optional[ImageArtifact]:
    """Local Automatic1111 txt2img API. Always returns PNG."""
    sd_api_url = config["sd_api_url"]
    width, height = ASPECT_RATIO_SIZES.get(synthesis.aspect_ratio, (1024, 1024))

    async with httpx.AsyncClient(timeout=120) as client:
        response = await client.post(
            f"{sd_api_url}/sdapi/v1/txt2img",
            json={
                "prompt": prompt,
                "width": width,
                "height": height,
                "steps": 20,
                "cfg_scale": 7,
                "batch_size": synthesis.image_count,
            },
        )
        response.raise_for_status()
        data = response.json()

    try:
        images = [img for img in data.get("images") or [] if img]
    except PAYLOAD_ERRORS as e:
        logger.error("sd_parse_error", error=str(e), full_response=data)
        raise ValueError(f"Failed to parse Stable Diffusion response: {data}") from e
    if not images:
        logger.warning("sd_image_no_output", prompt=prompt[:80])
        return None

    logger.info("sd_image_generated", prompt=prompt[:50])
    return ImageArtifact.from_b64(filename, images[0], "image/png")


async def _synthesize_placeholder(
    prompt: str,
    synthesis: SynthesisConfig,
    filename: str,
) -> Optional[ImageArtifact]:
    """Development mode - fetch a placeholder image labelled with the prompt hash."""
    width, height = ASPECT_RATIO_SIZES.get(synthesis.aspect_ratio, (1024, 1024))
    prompt_hash = hashlib.md5(prompt.encode()).hexdigest()[:6]
    url = f"https://placehold.co/{width}x{height}/1a1a2e/eaeaea/png?text=AI+Image+{prompt_hash}"

    async with httpx.AsyncClient(timeout=30, follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()

    logger.info("placeholder_image_generated", prompt=prompt[:50])
    return ImageArtifact(filename=filename, data=response.content, mime_type="image/png")
