"""
Exceptions raised by the illustration engine.

Everything that can be repaired locally (bad layouts, clustered layouts,
layout service outages, suitability check failures) never reaches the
caller. Only the two conditions below do.
"""
from typing import List, Optional

import httpx

from .schemas import GenerationAttempt

# Errors a generative service call can raise. pydantic's ValidationError and
# json.JSONDecodeError are both ValueErrors.
SERVICE_ERRORS = (httpx.HTTPError, ValueError, RuntimeError)


class NoImagesError(ValueError):
    """Placement planning was called with an empty image batch."""

    def __init__(self, message: str = "No images provided for placement planning."):
        super().__init__(message)


class GenerationExhaustedError(RuntimeError):
    """Image synthesis never passed the quality gate within the attempt budget."""

    def __init__(
        self,
        original_prompt: str,
        attempts: Optional[List[GenerationAttempt]] = None,
    ):
        self.original_prompt = original_prompt
        self.attempts = list(attempts or [])
        last_reason = self.attempts[-1].rejection_reason if self.attempts else None
        message = (
            f"Failed to generate a valid image after {len(self.attempts)} attempts "
            f"for prompt: {original_prompt}"
        )
        if last_reason:
            message += f" (last failure: {last_reason})"
        super().__init__(message)
