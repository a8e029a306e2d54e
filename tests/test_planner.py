import asyncio
import json

import httpx
import pytest

from illustrate import planner
from illustrate.errors import GenerationExhaustedError, NoImagesError
from illustrate.planner import illustrate_article, is_header_suitable, plan_image_placements
from illustrate.schemas import (
    ClusterThresholds,
    GenerateArticleImagesOutput,
    HeaderSuitability,
    IllustrateArticleInput,
    PlanImagePlacementsInput,
)

from conftest import assert_finalized, make_image, make_images

TEN_BLOCKS = [f"Paragraph {i}." for i in range(10)]


def layout(header, **placements):
    return {
        "header_image_filename": header,
        "placements": [
            {"image_filename": name.replace("_", "."), "after_block_index": index}
            for name, index in placements.items()
        ],
    }


def patch_layout(monkeypatch, result):
    calls = []

    async def fake_json(**kwargs):
        calls.append(kwargs)
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(planner, "call_llm_json", fake_json)
    return calls


def patch_suitability(monkeypatch, suitable):
    async def fake_validated(**kwargs):
        if isinstance(suitable, Exception):
            raise suitable
        return HeaderSuitability(is_suitable=suitable)

    monkeypatch.setattr(planner, "call_llm_validated", fake_validated)


def plan(ctx, images, blocks=TEN_BLOCKS, **kwargs):
    params = PlanImagePlacementsInput(
        article_title="Title",
        article_content="Body",
        content_blocks=blocks,
        images=images,
        **kwargs,
    )
    return asyncio.run(plan_image_placements(ctx, params))


# =============================================================================
# PLACEMENT PLANNER
# =============================================================================

def test_empty_batch_is_rejected(ctx):
    with pytest.raises(NoImagesError, match="No images provided"):
        plan(ctx, [])


def test_spread_ai_layout_is_kept(ctx, monkeypatch):
    images = make_images("header.png", "a.png", "b.png")
    calls = patch_layout(monkeypatch, layout("header.png", a_png=3, b_png=7))

    result = plan(ctx, images, check_header_suitability=False)

    assert result.strategy_source == "ai"
    assert result.strategy.index_of("a.png") == 3
    assert result.strategy.index_of("b.png") == 7
    assert result.new_images == []
    # one layout request, with every image attached
    assert len(calls) == 1
    assert calls[0]["images"] == images
    assert "[9]: Paragraph 9." in calls[0]["prompt"]
    assert ctx.decisions() == ["layout_accepted"]


def test_clustered_layout_falls_back_keeping_header(ctx, monkeypatch):
    images = make_images("header.png", "a.png", "b.png", "c.png")
    patch_layout(monkeypatch, layout("header.png", a_png=0, b_png=0, c_png=0))

    result = plan(ctx, images, check_header_suitability=False)

    assert result.strategy_source == "fallback_clustered"
    assert result.strategy.header_image_filename == "header.png"
    assert {p.image_filename: p.after_block_index for p in result.strategy.placements} == {
        "a.png": 1,
        "b.png": 4,
        "c.png": 7,
    }
    assert "layout_clustered" in ctx.decisions()


def test_unknown_header_falls_back_to_first_image(ctx, monkeypatch):
    images = make_images("x.png", "y.png")
    patch_layout(monkeypatch, layout("ghost.png", y_png=2))

    result = plan(ctx, images, blocks=["one", "two", "three", "four"], check_header_suitability=False)

    assert result.strategy_source == "fallback_header_unresolved"
    assert result.strategy.header_image_filename == "x.png"
    assert result.strategy.index_of("y.png") == 1


@pytest.mark.parametrize("error", [
    httpx.ConnectError("unreachable"),
    json.JSONDecodeError("Expecting value", "", 0),
    RuntimeError("Gemini API error"),
])
def test_layout_service_failure_falls_back(ctx, monkeypatch, error):
    images = make_images("h.png", "a.png", "b.png")
    patch_layout(monkeypatch, error)

    result = plan(ctx, images)

    assert result.strategy_source == "fallback_service_error"
    assert result.status == "success"
    assert_finalized(result.strategy, images, 10)
    assert ctx.events[0].level == "error"


def test_repairs_are_reported(ctx, monkeypatch):
    images = make_images("h.png", "a.png", "b.png")
    patch_layout(monkeypatch, layout("h.png", a_png=3, ghost_png=5, b_png=42))

    result = plan(ctx, images, check_header_suitability=False)

    assert result.strategy.index_of("b.png") == 9
    assert ctx.decisions().count("layout_repaired") == 2


def test_unsuitable_header_is_replaced(ctx, monkeypatch):
    images = make_images("header.png", "a.png", "b.png")
    patch_layout(monkeypatch, layout("header.png", a_png=3, b_png=6))
    patch_suitability(monkeypatch, False)

    async def fake_header(ctx, title, content, existing_filenames=(), **kwargs):
        assert "header.png" in existing_filenames
        return make_image("generated-header-image.png")

    monkeypatch.setattr(planner, "generate_header_image", fake_header)

    result = plan(ctx, images)

    strategy = result.strategy
    assert strategy.header_image_filename == "generated-header-image.png"
    assert [img.filename for img in result.new_images] == ["generated-header-image.png"]
    assert strategy.index_of("a.png") == 3
    assert strategy.index_of("b.png") == 6
    # the old header becomes a body image
    assert strategy.index_of("header.png") == 9
    assert_finalized(strategy, images + result.new_images, 10)
    assert "header_replaced" in ctx.decisions()


def test_failed_header_replacement_keeps_original(ctx, monkeypatch):
    images = make_images("header.png", "a.png")
    patch_layout(monkeypatch, layout("header.png", a_png=5))
    patch_suitability(monkeypatch, False)

    async def fake_header(*args, **kwargs):
        raise GenerationExhaustedError("header prompt", [])

    monkeypatch.setattr(planner, "generate_header_image", fake_header)

    result = plan(ctx, images)

    assert result.strategy.header_image_filename == "header.png"
    assert result.new_images == []
    assert "header_replacement_failed" in ctx.decisions()


def test_suitable_header_is_left_alone(ctx, monkeypatch):
    images = make_images("header.png", "a.png")
    patch_layout(monkeypatch, layout("header.png", a_png=5))
    patch_suitability(monkeypatch, True)

    async def fail(*args, **kwargs):
        raise AssertionError("no replacement expected")

    monkeypatch.setattr(planner, "generate_header_image", fail)

    result = plan(ctx, images)

    assert result.strategy.header_image_filename == "header.png"
    assert result.strategy_source == "ai"


def test_header_suitability_check_fails_open(monkeypatch):
    patch_suitability(monkeypatch, httpx.ReadTimeout("slow"))

    assert asyncio.run(is_header_suitable({}, make_image("h.png"), "Title", "Summary"))


def test_thresholds_from_workflow_config(monkeypatch):
    from illustrate import RunContext

    ctx = RunContext(
        config={"cluster_thresholds": {"min_spread_ratio": 0.9}},
        use_environment=False,
    )
    images = make_images("h.png", "a.png", "b.png")
    patch_layout(monkeypatch, layout("h.png", a_png=3, b_png=7))

    result = plan(ctx, images, check_header_suitability=False)

    assert result.strategy_source == "fallback_clustered"


def test_explicit_thresholds_win(ctx, monkeypatch):
    images = make_images("h.png", "a.png", "b.png")
    patch_layout(monkeypatch, layout("h.png", a_png=1, b_png=2))

    result = plan(
        ctx, images, check_header_suitability=False,
        cluster_thresholds=ClusterThresholds(min_spread_ratio=0.1),
    )

    assert result.strategy_source == "ai"


# =============================================================================
# ILLUSTRATE ARTICLE
# =============================================================================

ARTICLE = """# Tides

The moon pulls the sea.

## Why it matters

Harbours plan around it.

- Spring tides
- Neap tides
"""


def test_article_without_images_goes_text_only(ctx):
    result = asyncio.run(illustrate_article(ctx, IllustrateArticleInput(
        title="Tides", markdown_content=ARTICLE, generate_missing_images=False,
    )))

    assert result.status == "text_only"
    assert result.strategy.placements == ()
    assert result.content_blocks[0] == "Tides"


def test_article_generation_failure_goes_text_only(ctx, monkeypatch):
    async def nothing(ctx, params):
        return GenerateArticleImagesOutput(status="error")

    monkeypatch.setattr(planner, "generate_article_images", nothing)

    result = asyncio.run(illustrate_article(ctx, IllustrateArticleInput(title="Tides", markdown_content=ARTICLE)))

    assert result.status == "text_only"


def test_article_with_generated_images_is_planned(ctx, monkeypatch):
    generated = make_images("generated-image-1.png", "generated-image-2.png")

    async def fake_generate(ctx, params):
        return GenerateArticleImagesOutput(images=generated, total_generated=2)

    monkeypatch.setattr(planner, "generate_article_images", fake_generate)
    patch_layout(monkeypatch, layout("generated-image-1.png", **{"generated-image-2_png": 4}))

    result = asyncio.run(illustrate_article(ctx, IllustrateArticleInput(
        title="Tides", markdown_content=ARTICLE, check_header_suitability=False,
    )))

    assert result.status == "success"
    assert result.strategy.header_image_filename == "generated-image-1.png"
    assert result.strategy.index_of("generated-image-2.png") == 4
    assert [img.filename for img in result.images] == ["generated-image-1.png", "generated-image-2.png"]
    assert_finalized(result.strategy, result.images, len(result.content_blocks))
