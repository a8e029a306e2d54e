"""
Layout planning and generation reliability for illustrated articles.

This package contains the workflow nodes and the pure placement logic
they are built on.
"""

from .blocks import ContentBlockIndex

from .context import RunContext

from .errors import (
    NoImagesError,
    GenerationExhaustedError,
    SERVICE_ERRORS,
)

from .placement import (
    # Pure placement logic
    validate_layout,
    with_header,
    is_degenerate,
    cluster_reason,
    programmatic_placement,
)

from .generation import (
    refine_prompt,
    verify_image,
    next_state,
    rejection_reason,
    generate_and_verify_image,
    generate_header_image,
    generate_article_images,
)

from .planner import (
    is_header_suitable,
    plan_image_placements,
    illustrate_article,
)

from .schemas import (
    ImageArtifact,
    Placement,
    PlacementStrategy,
    ValidProposal,
    NeedsFallback,
    ClusterThresholds,
    GenerationAttempt,
    AttemptOutcome,
    QualityVerdict,
    SynthesisConfig,
    LLMConfig,
    ImageConfig,
)

__version__ = "0.1.0"
