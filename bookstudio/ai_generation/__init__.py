"""
AI provider clients and image prompt assembly.
"""

from .prompting import ImagePrompt, build_cover_prompt, build_illustration_prompt
from .replicate_service import (
    ImageGeneration,
    ImageGenerationRequest,
    ReplicateImageGenerator,
    cancel_image_generation,
    normalize_image_outputs,
)
from .text_service import TextGeneration, TextGenerationRequest, TextGenerator

__all__ = [
    "ImageGeneration",
    "ImageGenerationRequest",
    "ImagePrompt",
    "ReplicateImageGenerator",
    "TextGeneration",
    "TextGenerationRequest",
    "TextGenerator",
    "build_cover_prompt",
    "build_illustration_prompt",
    "cancel_image_generation",
    "normalize_image_outputs",
]
