"""
Pydantic schemas for the illustration engine.

These provide type safety and validation for the workflow nodes and for the
structured responses we ask the generative service for.
"""
import base64
from enum import Enum
from typing import Any, List, Optional, Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# MODEL REGISTRIES
# =============================================================================
# Maps user-friendly model names to provider + API model ID
# Format: "Display Name" -> (provider, model_id)

LLM_MODEL_REGISTRY: Dict[str, tuple] = {
    # Google Gemini (vision-capable)
    "Gemini 3 Pro": ("gemini", "gemini-3-pro-preview"),
    "Gemini 3 Flash": ("gemini", "gemini-3-flash-preview"),
    "Gemini 2.5 Pro": ("gemini", "gemini-2.5-pro"),
    "Gemini 2.5 Flash": ("gemini", "gemini-2.5-flash"),

    # Anthropic Claude
    "Claude Opus 4.5": ("anthropic", "claude-opus-4-5-20251101"),
    "Claude Sonnet 4.5": ("anthropic", "claude-sonnet-4-5-20251101"),
    "Claude Sonnet 4": ("anthropic", "claude-sonnet-4-20250514"),

    # OpenAI
    "GPT-5": ("openai", "gpt-5"),
    "GPT-4.1": ("openai", "gpt-4.1"),
    "GPT-4o": ("openai", "gpt-4o"),

    # Local (Ollama) - needs a vision model for layout and quality checks
    "Llama 3.2 Vision (Local)": ("ollama", "llama3.2-vision"),
    "Qwen 2.5 VL (Local)": ("ollama", "qwen2.5vl"),
}

IMAGE_MODEL_REGISTRY: Dict[str, tuple] = {
    "Imagen 4": ("gemini", "imagen-4.0-generate-001"),
    "Nano Banana Pro": ("gemini", "gemini-3-pro-image-preview"),
    "GPT Image 1": ("openai", "gpt-image-1"),
    "DALL-E 3": ("openai", "dall-e-3"),
    "Stable Diffusion (Local)": ("stable-diffusion", None),
    "Placeholder (Dev)": ("placeholder", None),
}


def resolve_model(model_name: Optional[str], registry: Optional[Dict[str, tuple]] = None) -> tuple:
    """
    Resolve a model name to (provider, model_id).

    Args:
        model_name: User-friendly model name (e.g., "Gemini 3 Pro")
        registry: Registry to look in (defaults to LLM_MODEL_REGISTRY)

    Returns:
        Tuple of (provider, model_id) or (None, None) if not found
    """
    if not model_name:
        return (None, None)
    registry = LLM_MODEL_REGISTRY if registry is None else registry
    return registry.get(model_name, (None, None))


# =============================================================================
# SERVICE CONFIGURATION
# =============================================================================

class LLMConfig(BaseModel):
    """
    LLM configuration that can be passed to any node.

    Resolution order (first non-None wins):
    1. Node params (this object)
    2. Secrets / environment variables (LLM_PROVIDER + LLM_MODEL)
    3. Defaults (Gemini 3 Pro)
    """
    model: Optional[str] = Field(
        default=None,
        description="Model to use (e.g., 'Gemini 3 Pro', 'Claude Sonnet 4', 'GPT-4o')"
    )
    temperature: Optional[float] = Field(
        default=None,
        ge=0,
        le=2,
        description="Temperature for LLM sampling (0=deterministic, 1=default, 2=max creativity)"
    )


class ImageConfig(BaseModel):
    """Image synthesis provider configuration."""
    model: Optional[str] = Field(
        default=None,
        description="Friendly image model name from IMAGE_MODEL_REGISTRY (e.g., 'Imagen 4')"
    )
    provider: Optional[str] = Field(
        default=None,
        description="Image provider: 'gemini', 'openai', 'stable-diffusion', 'placeholder'"
    )


class SynthesisConfig(BaseModel):
    """Per-request image synthesis settings."""
    model_config = ConfigDict(frozen=True)

    image_count: int = Field(default=1, ge=1, le=1)
    output_mime_type: str = "image/png"
    aspect_ratio: str = "16:9"


# =============================================================================
# CORE DATA MODEL
# =============================================================================

class ImageArtifact(BaseModel):
    """An image in the batch. The filename is its only identity."""
    model_config = ConfigDict(frozen=True)

    filename: str
    data: bytes = Field(repr=False)
    mime_type: str = "image/png"

    @property
    def b64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.b64}"

    @classmethod
    def from_b64(cls, filename: str, b64_data: str, mime_type: str = "image/png") -> "ImageArtifact":
        if not isinstance(b64_data, (str, bytes)):
            raise ValueError(f"Image payload for {filename!r} is not base64 text")
        return cls(filename=filename, data=base64.b64decode(b64_data), mime_type=mime_type)


class Placement(BaseModel):
    """Insert `image_filename` immediately after block `after_block_index`."""
    model_config = ConfigDict(frozen=True)

    image_filename: str
    after_block_index: int


class PlacementStrategy(BaseModel):
    """Header choice plus body placements."""
    model_config = ConfigDict(frozen=True)

    header_image_filename: str = ""
    placements: Tuple[Placement, ...] = ()

    def index_of(self, filename: str) -> Optional[int]:
        for placement in self.placements:
            if placement.image_filename == filename:
                return placement.after_block_index
        return None


class ValidProposal(BaseModel):
    """A repaired, invariant-respecting layout plus what had to be fixed."""
    model_config = ConfigDict(frozen=True)

    strategy: PlacementStrategy
    repairs: Tuple[str, ...] = ()


class NeedsFallback(BaseModel):
    """The proposal cannot be repaired; use programmatic placement."""
    model_config = ConfigDict(frozen=True)

    reason: str


class ClusterThresholds(BaseModel):
    """
    Heuristics for spotting bunched-up layouts.

    A layout is degenerate when its furthest image sits before
    `min_spread_ratio` of the article, or when the number of distinct
    insertion points is at most `max_shared_ratio` of the placement count.
    """
    model_config = ConfigDict(frozen=True)

    min_spread_ratio: float = 0.25
    max_shared_ratio: float = 0.5
    min_block_count: int = 5
    min_placements: int = 2


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    NO_OUTPUT = "no-output"
    QUALITY_REJECTED = "quality-rejected"
    SERVICE_ERROR = "serviceError"


class GenerationAttempt(BaseModel):
    """One synthesize-then-verify cycle. Never persisted."""
    model_config = ConfigDict(frozen=True)

    attempt_number: int
    prompt_used: str
    outcome: AttemptOutcome
    rejection_reason: Optional[str] = None


class DecisionEvent(BaseModel):
    """A decision taken by the engine, for external observability."""
    component: str
    decision: str
    reason: Optional[str] = None
    level: str = "info"
    fields: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# LLM RESPONSE SCHEMAS
# =============================================================================

class LLMPlacementItem(BaseModel):
    """One body image placement proposed by the model."""
    image_filename: str
    after_block_index: int


class LLMLayoutProposal(BaseModel):
    """
    Schema sent to the model for the layout proposal.

    Only used to constrain the response; the reply itself is handed to the
    validator as raw JSON.
    """
    header_image_filename: str = Field(description="Filename of the header image.")
    placements: List[LLMPlacementItem] = Field(default_factory=list)


class QualityVerdict(BaseModel):
    """Post-synthesis quality judgment."""
    has_illegible_text: bool = Field(description="Image contains garbled, crowded or nonsensical text")
    is_relevant: bool = Field(description="Image clearly reflects the subject of the prompt")

    @property
    def passed(self) -> bool:
        return not self.has_illegible_text and self.is_relevant


class HeaderSuitability(BaseModel):
    """Header image suitability judgment."""
    is_suitable: bool


class LLMImageIdea(BaseModel):
    prompt: str

    @field_validator("prompt", mode="before")
    @classmethod
    def strip_formatting(cls, v):
        """Image prompts must be plain text."""
        if isinstance(v, str):
            return v.replace("`", "").strip()
        return v


class LLMImageIdeasResponse(BaseModel):
    """Expected response format for image concept generation."""
    ideas: List[LLMImageIdea]


# =============================================================================
# WORKFLOW NODE SCHEMAS
# =============================================================================

def _require_unique_filenames(images: List[ImageArtifact]) -> List[ImageArtifact]:
    """Filenames identify images, so a batch may not repeat one."""
    seen, duplicates = set(), set()
    for img in images:
        if img.filename in seen:
            duplicates.add(img.filename)
        seen.add(img.filename)
    if duplicates:
        raise ValueError(f"Duplicate image filenames in batch: {sorted(duplicates)}")
    return images


class PlanImagePlacementsInput(BaseModel):
    """Input for plan_image_placements node."""
    article_title: str = ""
    article_content: str = Field(default="", description="Approved article markdown")
    content_blocks: List[str] = Field(default_factory=list, description="Indexed content blocks")
    images: List[ImageArtifact] = Field(default_factory=list)
    check_header_suitability: bool = Field(
        default=True,
        description="Ask the vision model whether the chosen header works, and replace it if not"
    )
    cluster_thresholds: Optional[ClusterThresholds] = None
    max_attempts: int = Field(default=3, ge=1, description="Attempt budget for a replacement header")
    llm_config: Optional[LLMConfig] = Field(default=None, description="Override LLM provider/model")
    image_config: Optional[ImageConfig] = Field(default=None, description="Override image provider/model")

    @field_validator("images")
    @classmethod
    def unique_filenames(cls, v):
        return _require_unique_filenames(v)


class PlanImagePlacementsOutput(BaseModel):
    """Output from plan_image_placements node."""
    strategy: PlacementStrategy = Field(default_factory=PlacementStrategy)
    new_images: List[ImageArtifact] = Field(default_factory=list)
    strategy_source: str = "ai"  # ai, fallback_service_error, fallback_header_unresolved, fallback_clustered
    status: str = "success"


class GenerateArticleImagesInput(BaseModel):
    """Input for generate_article_images node."""
    article_content: str = ""
    number_of_images: int = Field(default=3, ge=1, description="1 header + N-1 body images")
    max_attempts: int = Field(default=3, ge=1)
    max_concurrent: int = Field(default=3, ge=1)
    llm_config: Optional[LLMConfig] = None
    image_config: Optional[ImageConfig] = None


class GenerateArticleImagesOutput(BaseModel):
    """Output from generate_article_images node."""
    images: List[ImageArtifact] = Field(default_factory=list)
    failed_prompts: List[str] = Field(default_factory=list)
    total_generated: int = 0
    total_failed: int = 0
    status: str = "success"


class IllustrateArticleInput(BaseModel):
    """Input for illustrate_article node."""
    title: str = ""
    markdown_content: str = ""
    images: List[ImageArtifact] = Field(default_factory=list, description="User-supplied images")
    generate_missing_images: bool = True
    check_header_suitability: bool = True
    number_of_images: int = Field(default=3, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    llm_config: Optional[LLMConfig] = None
    image_config: Optional[ImageConfig] = None

    @field_validator("images")
    @classmethod
    def unique_filenames(cls, v):
        return _require_unique_filenames(v)


class IllustrateArticleOutput(BaseModel):
    """Finalized layout plus the full (possibly extended) image batch."""
    title: str = ""
    content_blocks: List[str] = Field(default_factory=list)
    strategy: PlacementStrategy = Field(default_factory=PlacementStrategy)
    images: List[ImageArtifact] = Field(default_factory=list)
    strategy_source: Optional[str] = None
    status: str = "success"  # success, text_only
