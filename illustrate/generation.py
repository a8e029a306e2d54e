"""
Image generation with a quality gate.

Every synthesized image is checked by a vision model before it is accepted.
When a check fails, the model is asked to rewrite its own prompt and the
image is generated again, up to a fixed attempt budget:

- refine_prompt: rewrite a failed prompt given the failure reason
- verify_image: judge legibility and relevance against the original prompt
- generate_and_verify_image: the bounded synthesize/verify/refine loop
- generate_header_image: a fresh header image for an article
- generate_article_images: concept + generate a whole batch, concurrently
"""
import asyncio
import json
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import structlog

from .errors import SERVICE_ERRORS, GenerationExhaustedError
from .llm import (
    _get_image_config,
    _get_llm_config,
    call_llm_text,
    call_llm_validated,
    extension_for,
    synthesize_image,
)
from .prompts import (
    ARTICLE_IMAGE_STYLE,
    HEADER_IMAGE_IDEA_PROMPT,
    IMAGE_IDEAS_PROMPT,
    REFINE_PROMPT_PROMPT,
    VERIFY_IMAGE_PROMPT,
)
from .schemas import (
    AttemptOutcome,
    GenerateArticleImagesInput,
    GenerateArticleImagesOutput,
    GenerationAttempt,
    ImageArtifact,
    ImageConfig,
    LLMConfig,
    LLMImageIdeasResponse,
    QualityVerdict,
    SynthesisConfig,
)

logger = structlog.get_logger()

COMPONENT = "generation_supervisor"

NO_OUTPUT_REASON = (
    "No output was produced, possibly due to a policy violation "
    "or a clarity issue in the prompt."
)
ILLEGIBLE_TEXT_REASON = "it contained garbled, nonsensical text"
IRRELEVANT_REASON = "it was not visually relevant to the prompt's subject matter"

HEADER_SYNTHESIS = SynthesisConfig(output_mime_type="image/png", aspect_ratio="16:9")
BODY_SYNTHESIS = SynthesisConfig(output_mime_type="image/png", aspect_ratio="4:3")


# =============================================================================
# RETRY STATE MACHINE
# =============================================================================

@dataclass(frozen=True)
class Accept:
    attempt: GenerationAttempt


@dataclass(frozen=True)
class Retry:
    failure_reason: str


@dataclass(frozen=True)
class Exhausted:
    failure_reason: str


def rejection_reason(verdict: QualityVerdict) -> str:
    """Failure reason naming only the checks that failed."""
    reasons = []
    if verdict.has_illegible_text:
        reasons.append(ILLEGIBLE_TEXT_REASON)
    if not verdict.is_relevant:
        reasons.append(IRRELEVANT_REASON)
    return " and ".join(reasons)


def service_error_reason(error: Exception) -> str:
    return f"The service returned an error: {error}. The prompt may be unsafe or invalid."


def next_state(attempt: GenerationAttempt, max_attempts: int) -> Union[Accept, Retry, Exhausted]:
    """Decide what follows an attempt. Pure."""
    if attempt.outcome == AttemptOutcome.SUCCESS:
        return Accept(attempt)
    reason = attempt.rejection_reason or NO_OUTPUT_REASON
    if attempt.attempt_number >= max_attempts:
        return Exhausted(reason)
    return Retry(reason)


# =============================================================================
# PROMPT REFINER / QUALITY VERIFIER
# =============================================================================

def _clean_prompt(text: str) -> str:
    """Strip labels and wrapping quotes models like to add."""
    text = text.strip()
    for label in ("New prompt:", "Improved prompt:", "Prompt:"):
        if text.lower().startswith(label.lower()):
            text = text[len(label):].strip()
    return text.strip("\"'` \n")


async def refine_prompt(
    config: dict,
    original_prompt: str,
    last_failed_prompt: str,
    failure_reason: str,
) -> str:
    """
    Ask the text model for a rewritten image prompt.

    The rewrite positively redescribes what the image should show; it never
    just stacks negative constraints onto the old prompt.

    Raises:
        ValueError: If the model returns an empty rewrite
    """
    prompt = REFINE_PROMPT_PROMPT.format(
        original_prompt=original_prompt,
        last_failed_prompt=last_failed_prompt,
        failure_reason=failure_reason,
    )
    rewritten = _clean_prompt(await call_llm_text(prompt, config, max_tokens=500))
    if not rewritten:
        raise ValueError("Prompt refinement returned an empty prompt")
    return rewritten


async def verify_image(
    config: dict,
    image: ImageArtifact,
    original_prompt: str,
) -> QualityVerdict:
    """One vision judgment of an image against the prompt it came from. No retries."""
    return await call_llm_validated(
        prompt=VERIFY_IMAGE_PROMPT.format(original_prompt=original_prompt),
        config=config,
        response_model=QualityVerdict,
        images=[image],
        max_tokens=200,
        max_retries=0,
    )


# =============================================================================
# GENERATION SUPERVISOR
# =============================================================================

async def _attempt(
    number: int,
    prompt: str,
    original_prompt: str,
    synthesis: SynthesisConfig,
    llm_config: dict,
    image_config: dict,
    filename: str,
) -> tuple:
    """Run one synthesize-then-verify cycle. Returns (attempt, artifact or None)."""
    try:
        image = await synthesize_image(prompt, synthesis, image_config, filename)
        if image is None:
            return GenerationAttempt(
                attempt_number=number,
                prompt_used=prompt,
                outcome=AttemptOutcome.NO_OUTPUT,
                rejection_reason=NO_OUTPUT_REASON,
            ), None

        # Judge against the original brief so refined prompts can't drift
        verdict = await verify_image(llm_config, image, original_prompt)
    except SERVICE_ERRORS as e:
        return GenerationAttempt(
            attempt_number=number,
            prompt_used=prompt,
            outcome=AttemptOutcome.SERVICE_ERROR,
            rejection_reason=service_error_reason(e),
        ), None

    if verdict.passed:
        return GenerationAttempt(
            attempt_number=number,
            prompt_used=prompt,
            outcome=AttemptOutcome.SUCCESS,
        ), image

    return GenerationAttempt(
        attempt_number=number,
        prompt_used=prompt,
        outcome=AttemptOutcome.QUALITY_REJECTED,
        rejection_reason=rejection_reason(verdict),
    ), None


async def generate_and_verify_image(
    ctx,
    original_prompt: str,
    synthesis: SynthesisConfig,
    max_attempts: int = 3,
    filename: str = "generated-image.png",
    llm_config: Optional[LLMConfig] = None,
    image_config: Optional[ImageConfig] = None,
) -> ImageArtifact:
    """
    Generate an image that passes the quality gate.

    Makes at most `max_attempts` synthesis calls and `max_attempts - 1`
    prompt refinements. A refinement that fails leaves the prompt as it was.

    Raises:
        GenerationExhaustedError: If no attempt passes verification
    """
    llm = _get_llm_config(ctx, llm_config)
    images = _get_image_config(ctx, image_config)

    attempts: List[GenerationAttempt] = []
    current_prompt = original_prompt

    for number in range(1, max_attempts + 1):
        logger.info(
            "image_generation_attempt",
            attempt=number,
            max_attempts=max_attempts,
            filename=filename,
            prompt=current_prompt[:120],
        )
        attempt, image = await _attempt(
            number, current_prompt, original_prompt, synthesis, llm, images, filename,
        )
        attempts.append(attempt)

        state = next_state(attempt, max_attempts)
        if isinstance(state, Accept):
            ctx.report_decision(COMPONENT, "image_accepted", filename=filename, attempt=number)
            return image

        if isinstance(state, Exhausted):
            ctx.report_decision(
                COMPONENT, "image_generation_exhausted", state.failure_reason,
                level="error", filename=filename, attempts=number,
            )
            raise GenerationExhaustedError(original_prompt, attempts)

        ctx.report_decision(
            COMPONENT, "image_attempt_failed", state.failure_reason,
            level="warning", filename=filename, attempt=number, outcome=attempt.outcome.value,
        )
        try:
            current_prompt = await refine_prompt(llm, original_prompt, current_prompt, state.failure_reason)
        except SERVICE_ERRORS as e:
            logger.warning("prompt_refinement_failed", filename=filename, attempt=number, error=str(e))

    # max_attempts < 1
    raise GenerationExhaustedError(original_prompt, attempts)


# =============================================================================
# HEADER / ARTICLE IMAGE GENERATION
# =============================================================================

def unique_filename(filename: str, taken: Sequence[str]) -> str:
    """`filename`, or `name-2.ext`, `name-3.ext`... if it is already taken."""
    taken = set(taken)
    if filename not in taken:
        return filename
    stem, dot, ext = filename.rpartition(".")
    if not dot:
        stem, ext = filename, ""
    n = 2
    while True:
        candidate = f"{stem}-{n}.{ext}" if ext else f"{stem}-{n}"
        if candidate not in taken:
            return candidate
        n += 1


async def generate_header_image(
    ctx,
    article_title: str,
    article_content: str,
    existing_filenames: Sequence[str] = (),
    max_attempts: int = 3,
    llm_config: Optional[LLMConfig] = None,
    image_config: Optional[ImageConfig] = None,
) -> ImageArtifact:
    """
    Write a header prompt for the article, then generate it through the
    quality gate.

    Raises:
        GenerationExhaustedError: If no header passes verification
    """
    config = _get_llm_config(ctx, llm_config)
    idea_prompt = HEADER_IMAGE_IDEA_PROMPT.format(
        article_title=article_title,
        article_summary=article_content[:1000],
    )
    image_prompt = _clean_prompt(await call_llm_text(idea_prompt, config, max_tokens=400))
    if not image_prompt:
        raise ValueError("Header prompt generation returned an empty prompt")

    logger.info("header_image_prompt_generated", prompt=image_prompt[:120])

    filename = unique_filename(
        f"generated-header-image.{extension_for(HEADER_SYNTHESIS.output_mime_type)}",
        existing_filenames,
    )
    return await generate_and_verify_image(
        ctx,
        image_prompt,
        HEADER_SYNTHESIS,
        max_attempts=max_attempts,
        filename=filename,
        llm_config=llm_config,
        image_config=image_config,
    )


async def generate_article_images(
    ctx,
    params: GenerateArticleImagesInput,
) -> GenerateArticleImagesOutput:
    """
    Generate a batch of images for an article with no user images.

    The model proposes one concept per image (the first is the header),
    then each concept runs its own generate/verify/refine loop. Loops run
    concurrently; results are matched by filename, not by completion order.
    """
    config = _get_llm_config(ctx, params.llm_config)
    number_of_images = params.number_of_images

    ctx.report_input({
        "article_length": len(params.article_content),
        "number_of_images": number_of_images,
        "max_attempts": params.max_attempts,
        "provider": config["provider"],
        "model": config["model"],
    })

    response_schema = (
        "Respond with JSON matching this schema:\n```json\n"
        f"{json.dumps(LLMImageIdeasResponse.model_json_schema(), indent=2)}\n```"
    )
    try:
        ideas = await call_llm_validated(
            prompt=IMAGE_IDEAS_PROMPT.format(
                number_of_images=number_of_images,
                article_content=params.article_content,
                response_schema=response_schema,
            ),
            config=config,
            response_model=LLMImageIdeasResponse,
            max_tokens=2000,
        )
    except SERVICE_ERRORS as e:
        logger.error("image_ideas_failed", error=str(e))
        ctx.report_output({"status": "error", "error": str(e)})
        return GenerateArticleImagesOutput(status="error")

    prompts = [idea.prompt for idea in ideas.ideas if idea.prompt][:number_of_images]
    if not prompts:
        logger.error("image_ideas_empty")
        ctx.report_output({"status": "error", "error": "no image concepts"})
        return GenerateArticleImagesOutput(status="error")

    style = ctx.get_config("image_style") or ARTICLE_IMAGE_STYLE
    semaphore = asyncio.Semaphore(params.max_concurrent)
    completed = 0

    async def generate_one(index: int, concept: str) -> Optional[ImageArtifact]:
        nonlocal completed
        synthesis = HEADER_SYNTHESIS if index == 0 else BODY_SYNTHESIS
        filename = f"generated-image-{index + 1}.{extension_for(synthesis.output_mime_type)}"
        try:
            async with semaphore:
                return await generate_and_verify_image(
                    ctx,
                    f"{style} {concept}",
                    synthesis,
                    max_attempts=params.max_attempts,
                    filename=filename,
                    llm_config=params.llm_config,
                    image_config=params.image_config,
                )
        except (GenerationExhaustedError, *SERVICE_ERRORS) as e:
            logger.error("article_image_failed", filename=filename, error=str(e))
            return None
        finally:
            completed += 1
            ctx.report_progress(int(completed / len(prompts) * 100), f"Image {completed}/{len(prompts)} done")

    results = await asyncio.gather(*(generate_one(i, p) for i, p in enumerate(prompts)))

    images = [img for img in results if img is not None]
    failed = [p for p, img in zip(prompts, results) if img is None]
    status = "success" if not failed else "partial" if images else "error"

    ctx.report_output({
        "filenames": [img.filename for img in images],
        "total_generated": len(images),
        "total_failed": len(failed),
        "status": status,
    })

    return GenerateArticleImagesOutput(
        images=images,
        failed_prompts=failed,
        total_generated=len(images),
        total_failed=len(failed),
        status=status,
    )
