"""
Layout planning workflow nodes.

plan_image_placements asks the vision model for a layout once per article,
repairs what it can, swaps an unsuitable header for a generated one, and
falls back to even programmatic placement whenever the AI layout is
missing, unusable or clustered. illustrate_article wires block extraction,
image generation and planning together.
"""
import json
from typing import List, Optional

import structlog

from .blocks import DEFAULT_PREVIEW_CHARS, ContentBlockIndex
from .errors import SERVICE_ERRORS, GenerationExhaustedError, NoImagesError
from .generation import generate_article_images, generate_header_image
from .llm import _get_llm_config, call_llm_json, call_llm_validated
from .placement import (
    DEFAULT_CLUSTER_THRESHOLDS,
    cluster_reason,
    programmatic_placement,
    validate_layout,
    with_header,
)
from .prompts import HEADER_SUITABILITY_PROMPT, LAYOUT_PROPOSAL_PROMPT
from .schemas import (
    ClusterThresholds,
    GenerateArticleImagesInput,
    HeaderSuitability,
    IllustrateArticleInput,
    IllustrateArticleOutput,
    ImageArtifact,
    LLMLayoutProposal,
    NeedsFallback,
    PlanImagePlacementsInput,
    PlanImagePlacementsOutput,
    PlacementStrategy,
)

logger = structlog.get_logger()

COMPONENT = "placement_planner"

# Article text shown to the header suitability check
HEADER_SUMMARY_CHARS = 500


async def is_header_suitable(
    config: dict,
    image: ImageArtifact,
    article_title: str,
    article_summary: str,
) -> bool:
    """
    Ask the vision model whether `image` works as the article's header.

    Fails open: a broken check never blocks the article.
    """
    prompt = HEADER_SUITABILITY_PROMPT.format(
        article_title=article_title,
        article_summary=article_summary[:HEADER_SUMMARY_CHARS],
    )
    try:
        verdict = await call_llm_validated(
            prompt=prompt,
            config=config,
            response_model=HeaderSuitability,
            images=[image],
            max_tokens=200,
            max_retries=0,
        )
    except SERVICE_ERRORS as e:
        logger.warning("header_suitability_check_failed", filename=image.filename, error=str(e))
        return True

    logger.info("header_suitability_checked", filename=image.filename, is_suitable=verdict.is_suitable)
    return verdict.is_suitable


def _build_layout_prompt(blocks: ContentBlockIndex, images: List[ImageArtifact]) -> str:
    response_schema = (
        "Respond with JSON matching this schema:\n```json\n"
        f"{json.dumps(LLMLayoutProposal.model_json_schema(), indent=2)}\n```"
    )
    return LAYOUT_PROPOSAL_PROMPT.format(
        max_index=max(len(blocks) - 1, 0),
        indexed_content=blocks.indexed_preview(DEFAULT_PREVIEW_CHARS),
        image_filenames=", ".join(img.filename for img in images),
        response_schema=response_schema,
    )


def _output(
    ctx,
    strategy: PlacementStrategy,
    source: str,
    new_images: Optional[List[ImageArtifact]] = None,
) -> PlanImagePlacementsOutput:
    new_images = list(new_images or [])
    ctx.report_output({
        "header_image_filename": strategy.header_image_filename,
        "placements": {p.image_filename: p.after_block_index for p in strategy.placements},
        "new_images": [img.filename for img in new_images],
        "strategy_source": source,
        "status": "success",
    })
    return PlanImagePlacementsOutput(
        strategy=strategy,
        new_images=new_images,
        strategy_source=source,
        status="success",
    )


async def plan_image_placements(
    ctx,
    params: PlanImagePlacementsInput,
) -> PlanImagePlacementsOutput:
    """
    Decide the header image and where every other image goes.

    1. One layout request to the vision model (block previews + all images)
    2. Repair the proposal; unresolvable header -> programmatic placement
    3. Optionally replace an unsuitable header with a generated one
    4. Clustered layout -> programmatic placement, keeping the header

    Any layout service failure degrades to programmatic placement.

    Raises:
        NoImagesError: If called without images
    """
    images = list(params.images)
    if not images:
        raise NoImagesError()

    config = _get_llm_config(ctx, params.llm_config)
    blocks = ContentBlockIndex(params.content_blocks)
    block_count = len(blocks)
    thresholds = (
        params.cluster_thresholds
        or _thresholds_from_config(ctx)
        or DEFAULT_CLUSTER_THRESHOLDS
    )

    ctx.report_input({
        "article_title": params.article_title,
        "block_count": block_count,
        "image_filenames": [img.filename for img in images],
        "check_header_suitability": params.check_header_suitability,
        "provider": config["provider"],
        "model": config["model"],
    })

    try:
        raw = await call_llm_json(
            prompt=_build_layout_prompt(blocks, images),
            config=config,
            response_model=LLMLayoutProposal,
            images=images,
            max_tokens=2000,
        )
    except SERVICE_ERRORS as e:
        ctx.report_decision(
            COMPONENT, "layout_service_failed", str(e), level="error",
            fallback="programmatic",
        )
        return _output(ctx, programmatic_placement(images, block_count), "fallback_service_error")

    validation = validate_layout(raw, images, block_count)
    if isinstance(validation, NeedsFallback):
        ctx.report_decision(
            COMPONENT, "layout_header_unresolved", validation.reason, level="warning",
            fallback="programmatic",
        )
        return _output(ctx, programmatic_placement(images, block_count), "fallback_header_unresolved")

    for repair in validation.repairs:
        ctx.report_decision(COMPONENT, "layout_repaired", repair, level="warning")

    strategy = validation.strategy
    all_images = images
    new_images: List[ImageArtifact] = []

    if params.check_header_suitability:
        header = next(img for img in images if img.filename == strategy.header_image_filename)
        suitable = await is_header_suitable(config, header, params.article_title, params.article_content)
        if not suitable:
            ctx.report_decision(
                COMPONENT, "header_unsuitable", "vision check rejected the header",
                level="warning", filename=header.filename,
            )
            replacement = await _replacement_header(ctx, params, [img.filename for img in images])
            if replacement is not None:
                new_images = [replacement]
                all_images = images + new_images
                strategy = with_header(strategy, replacement.filename, all_images, block_count)
                ctx.report_decision(
                    COMPONENT, "header_replaced", None,
                    previous=header.filename, filename=replacement.filename,
                )

    indices = [p.after_block_index for p in strategy.placements]
    rule = cluster_reason(indices, block_count, thresholds)
    if rule is not None:
        ctx.report_decision(
            COMPONENT, "layout_clustered", rule, level="warning",
            indices=indices, block_count=block_count, fallback="programmatic",
        )
        strategy = programmatic_placement(all_images, block_count, strategy.header_image_filename)
        return _output(ctx, strategy, "fallback_clustered", new_images)

    ctx.report_decision(COMPONENT, "layout_accepted", None, placements=len(strategy.placements))
    return _output(ctx, strategy, "ai", new_images)


async def _replacement_header(
    ctx,
    params: PlanImagePlacementsInput,
    existing_filenames: List[str],
) -> Optional[ImageArtifact]:
    """A freshly generated header, or None to keep the original."""
    try:
        return await generate_header_image(
            ctx,
            params.article_title,
            params.article_content,
            existing_filenames=existing_filenames,
            max_attempts=params.max_attempts,
            llm_config=params.llm_config,
            image_config=params.image_config,
        )
    except (GenerationExhaustedError, *SERVICE_ERRORS) as e:
        ctx.report_decision(
            COMPONENT, "header_replacement_failed", str(e), level="error",
            keeping="original",
        )
        return None


def _thresholds_from_config(ctx) -> Optional[ClusterThresholds]:
    value = ctx.get_config("cluster_thresholds")
    if not value:
        return None
    if isinstance(value, ClusterThresholds):
        return value
    return ClusterThresholds.model_validate(value)


async def illustrate_article(
    ctx,
    params: IllustrateArticleInput,
) -> IllustrateArticleOutput:
    """
    Finalized layout plus the full image batch for an approved article.

    Uses the caller's images if there are any, otherwise generates a set.
    With no images at all the article goes out text-only.
    """
    blocks = ContentBlockIndex.from_markdown(params.markdown_content)
    images = list(params.images)

    ctx.report_input({
        "title": params.title,
        "block_count": len(blocks),
        "user_images": len(images),
        "generate_missing_images": params.generate_missing_images,
    })

    if not images and params.generate_missing_images:
        ctx.report_progress(10, "Generating article images...")
        generated = await generate_article_images(ctx, GenerateArticleImagesInput(
            article_content=params.markdown_content,
            number_of_images=params.number_of_images,
            max_attempts=params.max_attempts,
            llm_config=params.llm_config,
            image_config=params.image_config,
        ))
        images = generated.images

    if not images:
        logger.info("article_text_only", title=params.title)
        ctx.report_output({"status": "text_only", "block_count": len(blocks)})
        return IllustrateArticleOutput(
            title=params.title,
            content_blocks=list(blocks),
            status="text_only",
        )

    ctx.report_progress(60, "Analyzing images and planning layout...")
    plan = await plan_image_placements(ctx, PlanImagePlacementsInput(
        article_title=params.title,
        article_content=params.markdown_content,
        content_blocks=list(blocks),
        images=images,
        check_header_suitability=params.check_header_suitability,
        max_attempts=params.max_attempts,
        llm_config=params.llm_config,
        image_config=params.image_config,
    ))

    ctx.report_progress(100, "Layout ready")
    return IllustrateArticleOutput(
        title=params.title,
        content_blocks=list(blocks),
        strategy=plan.strategy,
        images=images + plan.new_images,
        strategy_source=plan.strategy_source,
        status="success",
    )
