#!/usr/bin/env python3
"""
Plan the image layout for an approved article.

Reads article markdown and an optional folder of images, runs the
illustration workflow and writes the placement strategy (plus any images
it generated) to an output folder.

Usage:
    python scripts/illustrate_article.py article.md --images ./images --out ./out
    python scripts/illustrate_article.py article.md --no-header-check

Provider settings come from the environment (.env): LLM_PROVIDER, LLM_MODEL,
IMAGE_PROVIDER, IMAGE_MODEL, GOOGLE_API_KEY, OPENAI_API_KEY, ...
"""
import argparse
import asyncio
import json
import mimetypes
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from illustrate import ImageArtifact, RunContext, illustrate_article
from illustrate.schemas import IllustrateArticleInput

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp", ".gif"}


def load_images(folder: Path) -> list:
    """Images in a folder, sorted by name. The first is the default header."""
    images = []
    for path in sorted(folder.iterdir()):
        if path.suffix.lower() not in IMAGE_SUFFIXES:
            continue
        mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
        images.append(ImageArtifact(filename=path.name, data=path.read_bytes(), mime_type=mime_type))
    return images


def title_from_markdown(markdown: str, fallback: str) -> str:
    for line in markdown.splitlines():
        if line.startswith("# "):
            return line[2:].strip()
    return fallback


async def main(args: argparse.Namespace) -> int:
    article_path = Path(args.article)
    markdown = article_path.read_text(encoding="utf-8")
    images = load_images(Path(args.images)) if args.images else []
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    print("=" * 60)
    print("ARTICLE ILLUSTRATION")
    print("=" * 60)
    print(f"Article: {article_path}")
    print(f"Images:  {len(images)}")
    print()

    ctx = RunContext()
    result = await illustrate_article(ctx, IllustrateArticleInput(
        title=args.title or title_from_markdown(markdown, article_path.stem),
        markdown_content=markdown,
        images=images,
        generate_missing_images=not args.no_generate,
        check_header_suitability=not args.no_header_check,
        number_of_images=args.number_of_images,
        max_attempts=args.max_attempts,
    ))

    if result.status == "text_only":
        print("No images available - article stays text-only.")
        return 0

    user_filenames = {img.filename for img in images}
    for img in result.images:
        if img.filename not in user_filenames:
            (out_dir / img.filename).write_bytes(img.data)
            print(f"✓ Wrote generated image: {img.filename}")

    strategy_path = out_dir / "placement_strategy.json"
    strategy_path.write_text(json.dumps({
        "title": result.title,
        "strategy_source": result.strategy_source,
        "header_image_filename": result.strategy.header_image_filename,
        "placements": [p.model_dump() for p in result.strategy.placements],
        "content_blocks": result.content_blocks,
        "decisions": [e.model_dump() for e in ctx.events],
    }, indent=2), encoding="utf-8")

    print()
    print(f"Header:  {result.strategy.header_image_filename}")
    for p in result.strategy.placements:
        print(f"  {p.image_filename} -> after block {p.after_block_index}")
    print(f"Source:  {result.strategy_source}")
    print(f"✓ Strategy written to {strategy_path}")
    return 0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan image placement for an article.")
    parser.add_argument("article", help="Approved article markdown file")
    parser.add_argument("--images", help="Folder of user-supplied images")
    parser.add_argument("--out", default="out", help="Output folder")
    parser.add_argument("--title", help="Article title (defaults to the first H1)")
    parser.add_argument("--no-generate", action="store_true", help="Don't generate images when none are given")
    parser.add_argument("--no-header-check", action="store_true", help="Skip the header suitability check")
    parser.add_argument("--number-of-images", type=int, default=3)
    parser.add_argument("--max-attempts", type=int, default=3)
    return parser.parse_args(argv)


if __name__ == "__main__":
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
    )
    sys.exit(asyncio.run(main(parse_args())))
