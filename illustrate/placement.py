"""
Pure placement logic: validating AI layouts, spotting clustered layouts and
distributing images evenly when the AI layout can't be used.

Nothing in here calls a service or logs. Every function returns a new
strategy; callers decide what to report.
"""
from typing import Any, Dict, List, Optional, Sequence, Union

from .schemas import (
    ClusterThresholds,
    ImageArtifact,
    NeedsFallback,
    Placement,
    PlacementStrategy,
    ValidProposal,
)

DEFAULT_CLUSTER_THRESHOLDS = ClusterThresholds()


def max_block_index(block_count: int) -> int:
    return block_count - 1 if block_count > 0 else 0


def clamp_index(index: int, block_count: int) -> int:
    return max(0, min(max_block_index(block_count), index))


# =============================================================================
# PROGRAMMATIC PLACEMENT
# =============================================================================

def programmatic_placement(
    images: Sequence[ImageArtifact],
    block_count: int,
    header_override: Optional[str] = None,
) -> PlacementStrategy:
    """
    Spread body images evenly through the article.

    The article is cut into M+1 equal sections for M body images and each
    image lands at the end of its section. Header is the override if given,
    else the first image.
    """
    if not images:
        return PlacementStrategy(header_image_filename="", placements=())

    header = header_override or images[0].filename
    body = [img for img in images if img.filename != header]
    if not body:
        return PlacementStrategy(header_image_filename=header, placements=())

    step = block_count / (len(body) + 1)
    placements = tuple(
        Placement(
            image_filename=img.filename,
            after_block_index=clamp_index(round((i + 1) * step) - 1, block_count),
        )
        for i, img in enumerate(body)
    )
    return PlacementStrategy(header_image_filename=header, placements=placements)


# =============================================================================
# CLUSTER DETECTION
# =============================================================================

def cluster_reason(
    indices: Sequence[int],
    block_count: int,
    thresholds: ClusterThresholds = DEFAULT_CLUSTER_THRESHOLDS,
) -> Optional[str]:
    """
    Name the rule a bunched-up layout breaks, or None if it is spread out.

    - "front_loaded": every image sits in the opening part of the article
    - "shared_index": too many images share an insertion point
    """
    if len(indices) < thresholds.min_placements or block_count < thresholds.min_block_count:
        return None
    if max(indices) < block_count * thresholds.min_spread_ratio:
        return "front_loaded"
    if len(set(indices)) <= len(indices) * thresholds.max_shared_ratio:
        return "shared_index"
    return None


def is_degenerate(
    indices: Sequence[int],
    block_count: int,
    thresholds: ClusterThresholds = DEFAULT_CLUSTER_THRESHOLDS,
) -> bool:
    return cluster_reason(indices, block_count, thresholds) is not None


# =============================================================================
# LAYOUT VALIDATION
# =============================================================================

_HEADER_KEYS = ("header_image_filename", "headerImageFilename")
_FILENAME_KEYS = ("image_filename", "imageFilename")
_INDEX_KEYS = ("after_block_index", "afterBlockIndex", "after_paragraph_index", "afterParagraphIndex")


def _as_mapping(raw: Any) -> Optional[Dict[str, Any]]:
    if hasattr(raw, "model_dump"):
        raw = raw.model_dump()
    return raw if isinstance(raw, dict) else None


def _first_key(mapping: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in mapping:
            return mapping[key]
    return None


def _coerce_index(value: Any) -> Optional[int]:
    """Integer index from model output, or None if it isn't one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def complete_coverage(
    placements: Sequence[Placement],
    images: Sequence[ImageArtifact],
    header: str,
    block_count: int,
) -> tuple:
    """Append a last-block placement for every body image that has none."""
    placed = {p.image_filename for p in placements}
    missing = tuple(
        Placement(image_filename=img.filename, after_block_index=max_block_index(block_count))
        for img in images
        if img.filename != header and img.filename not in placed
    )
    return tuple(placements) + missing


def validate_layout(
    raw: Any,
    images: Sequence[ImageArtifact],
    block_count: int,
) -> Union[ValidProposal, NeedsFallback]:
    """
    Turn an untrusted layout proposal into a strategy that honours every
    placement invariant, or say that it can't be salvaged.

    Out-of-range indices are clamped rather than rejected; images the model
    forgot go after the last block. Never raises.
    """
    mapping = _as_mapping(raw)
    if mapping is None:
        return NeedsFallback(reason=f"proposal is not an object ({type(raw).__name__})")

    filenames = {img.filename for img in images}
    header = _first_key(mapping, _HEADER_KEYS)
    if not isinstance(header, str) or header not in filenames:
        return NeedsFallback(reason=f"header image {header!r} is not in the batch")

    raw_placements = _first_key(mapping, ("placements",))
    if not isinstance(raw_placements, list):
        raw_placements = []

    repairs: List[str] = []
    survivors: List[Placement] = []
    seen = set()
    for item in raw_placements:
        entry = _as_mapping(item)
        if entry is None:
            repairs.append("dropped non-object placement")
            continue
        filename = _first_key(entry, _FILENAME_KEYS)
        if filename == header:
            repairs.append(f"dropped placement of header image {header!r}")
            continue
        if not isinstance(filename, str) or filename not in filenames:
            repairs.append(f"dropped placement of unknown image {filename!r}")
            continue
        if filename in seen:
            repairs.append(f"dropped duplicate placement of {filename!r}")
            continue
        index = _coerce_index(_first_key(entry, _INDEX_KEYS))
        if index is None:
            repairs.append(f"dropped placement of {filename!r} with non-integer index")
            continue
        clamped = clamp_index(index, block_count)
        if clamped != index:
            repairs.append(f"clamped index {index} of {filename!r} to {clamped}")
        seen.add(filename)
        survivors.append(Placement(image_filename=filename, after_block_index=clamped))

    placements = complete_coverage(survivors, images, header, block_count)
    for placement in placements[len(survivors):]:
        repairs.append(
            f"appended missing image {placement.image_filename!r} at {placement.after_block_index}"
        )

    return ValidProposal(
        strategy=PlacementStrategy(header_image_filename=header, placements=placements),
        repairs=tuple(repairs),
    )


def with_header(
    strategy: PlacementStrategy,
    header: str,
    images: Sequence[ImageArtifact],
    block_count: int,
) -> PlacementStrategy:
    """
    Same layout under a different header.

    The new header loses its body placement; the old header, now a body
    image, goes after the last block.
    """
    placements = [p for p in strategy.placements if p.image_filename != header]
    return PlacementStrategy(
        header_image_filename=header,
        placements=complete_coverage(placements, images, header, block_count),
    )
