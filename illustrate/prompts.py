"""
Prompt templates for the layout, verification and generation calls.

All prompt constants are centralized here for easier maintenance and
iteration.
"""

# =============================================================================
# LAYOUT PROMPTS
# =============================================================================

LAYOUT_PROPOSAL_PROMPT = """### ROLE
You are an expert visual layout editor for a technical article. Analyze the indexed article content blocks and the attached images, then produce a layout that is visually appealing and easy to read.

### CRITICAL INSTRUCTIONS
1. **Select a Header Image**: Choose the single image that best represents the overall topic.
2. **Distribute Body Images Evenly**: Place the remaining images throughout the article to break up long stretches of text. A good layout has images spread out.
3. **STRICT RULE**: Do NOT cluster images together or put them all at the beginning of the article. Never place several images after the same block index. Aim for one image every few blocks.

### RULES FOR PLACEMENT
- `header_image_filename` must be the filename of your chosen header image.
- Every other image must appear exactly once in `placements`.
- `after_block_index` is the ZERO-BASED index of the content block the image should follow.
- The highest possible index is {max_index}.
- Each `after_block_index` should be unique if possible.

---

### ARTICLE CONTENT BLOCKS (INDEXED)
<content_blocks>
{indexed_content}
</content_blocks>

### AVAILABLE IMAGES (attached in this order)
<images>
{image_filenames}
</images>

### OUTPUT FORMAT
{response_schema}"""


HEADER_SUITABILITY_PROMPT = """### ROLE
You are a visual design critic. Decide whether the attached image works as the main "hero" or "header" image for a technical article.

### A GOOD HEADER IMAGE
- Is visually appealing and high quality.
- Represents the article's main theme, not a small detail of it.
- Is generally abstract or illustrative rather than an in-the-weeds screenshot (unless that screenshot captures the whole topic).
- Draws the reader in.

### A POOR HEADER IMAGE
- Is a low-quality or blurry screenshot.
- Is too specific: a tiny UI element or a single line of code that doesn't stand for the whole article.
- Is visually cluttered or confusing.

### ARTICLE
Title: "{article_title}"
Summary: "{article_summary}..."

### OUTPUT FORMAT
Respond ONLY with a JSON object with a single boolean key "is_suitable"."""


# =============================================================================
# GENERATION PROMPTS
# =============================================================================

VERIFY_IMAGE_PROMPT = """### ROLE
You are an image quality assurance agent. Analyze the attached image against the original prompt used to generate it.

### CHECKS
1. **Illegible Text**: Does the image contain crowded, nonsensical or garbled text that is not a clear, intentional part of the design?
2. **Prompt Relevance**: Does the image clearly and accurately reflect the main subject and intent of the original prompt?

### ORIGINAL PROMPT
"{original_prompt}"

### OUTPUT FORMAT
Respond ONLY with a JSON object with two boolean keys: "has_illegible_text" and "is_relevant"."""


REFINE_PROMPT_PROMPT = """### ROLE
You are a prompt engineer for an image generation model. An image generated from a prompt has failed a quality check. Rewrite the prompt so the next image succeeds.

### ORIGINAL CREATIVE CONCEPT
"{original_prompt}"

### THE PROMPT THAT FAILED
"{last_failed_prompt}"

### REASON FOR FAILURE
"{failure_reason}"

### INSTRUCTIONS
- Work out why the last prompt failed given the reason above.
- Rewrite it to be more specific and clear, directly addressing that failure.
- The new prompt must stay true to the original creative concept.
- Do NOT simply add negative constraints (e.g. "no text"). Rephrase the prompt to POSITIVELY describe the desired outcome (e.g. "A clean, symbolic illustration focused on the main subject.").
- Output ONLY the new prompt as a single line of plain text. No labels, no quotation marks, no commentary."""


HEADER_IMAGE_IDEA_PROMPT = """Based on the following article title and content, write a single, concise, descriptive prompt for an AI image generation model. The goal is a high-quality header image that is visually compelling and represents the article's core theme.

Article Title: "{article_title}"
Article Content Summary:
---
{article_summary}...
---

CRITICAL INSTRUCTIONS:
- The prompt should describe a professional, modern, slightly abstract technical illustration.
- Output ONLY the prompt string. Do not include labels, quotes or any other text."""


IMAGE_IDEAS_PROMPT = """Based on the following article text, suggest {number_of_images} distinct and visually compelling image concepts that would enhance the article. The first one must work as a header image (landscape orientation). For each concept, provide a concise, descriptive prompt suitable for an AI image generation model.

CRITICAL INSTRUCTIONS:
- Each prompt MUST be a simple, clean, plain-text string.
- Do NOT include Markdown, code formatting (like backticks) or special control characters. The prompts go straight to an image model.

Article Text:
---
{article_content}
---

{response_schema}"""


# Prepended to every generated article image concept
ARTICLE_IMAGE_STYLE = (
    "A professional, high-quality technical illustration for an article. "
    "Style: clean, modern, slightly abstract. Avoid crowded text; only use text "
    "for essential labels or titles if necessary."
)
