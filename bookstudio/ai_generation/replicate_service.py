"""
Integration with Replicate for illustration and cover generation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Iterable as IterableABC
from dataclasses import dataclass
from typing import Any, Callable

import replicate

from bookstudio.common.budget import require_within_budget
from bookstudio.common.cancellation import CancelToken
from bookstudio.common.config import DEFAULT_IMAGE_MODEL
from bookstudio.common.errors import AIServiceError, ValidationError
from bookstudio.common.retry import RetryPolicy, SleepFn, call_with_retry
from bookstudio.common.stages import AIStage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageGenerationRequest:
    """
    Attributes
    ----------
    references:
        Reference image URLs, most important first. Single-reference models
        receive only the head of the list.
    reference_strength:
        How strongly the references constrain the result, 0..1.
    """

    prompt: str
    negative_prompt: str
    width: int
    height: int
    seed: int | None = None
    references: tuple[str, ...] = ()
    reference_strength: float | None = None
    stage: AIStage = AIStage.ILLUSTRATIONS


@dataclass(frozen=True)
class ImageGeneration:
    image_url: str
    seed: int | None
    processing_time_ms: int
    provider: str
    model: str


def _aspect_ratio(width: int, height: int) -> str:
    if width <= 0 or height <= 0:
        return "1:1"
    ratio = width / height
    candidates = {"1:1": 1.0, "2:3": 2 / 3, "3:2": 1.5, "3:4": 0.75, "4:3": 4 / 3, "9:16": 9 / 16, "16:9": 16 / 9}
    return min(candidates, key=lambda key: abs(candidates[key] - ratio))


def _build_flux_kontext_input(request: ImageGenerationRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": request.prompt,
        "negative_prompt": request.negative_prompt,
        "output_format": "png",
        "safety_tolerance": 2,
        "prompt_upsampling": False,
        "aspect_ratio": _aspect_ratio(request.width, request.height),
    }
    if request.references:
        payload["input_image"] = request.references[0]
    return payload


def _build_flux_dev_input(request: ImageGenerationRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": request.prompt,
        "negative_prompt": request.negative_prompt,
        "output_format": "png",
        "aspect_ratio": _aspect_ratio(request.width, request.height),
        "num_outputs": 1,
    }
    if request.references:
        payload["image"] = request.references[0]
        if request.reference_strength is not None:
            # prompt_strength 1.0 ignores the init image entirely.
            payload["prompt_strength"] = round(1.0 - request.reference_strength, 2)
    return payload


def _build_consistent_character_input(request: ImageGenerationRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": request.prompt,
        "negative_prompt": request.negative_prompt,
        "number_of_outputs": 1,
        "output_format": "webp",
        "output_quality": 95,
        "randomise_poses": False,
    }
    if request.references:
        payload["subject"] = request.references[0]
    return payload


_MODEL_INPUT_BUILDERS: dict[str, Callable[[ImageGenerationRequest], dict[str, Any]]] = {
    "black-forest-labs/flux-kontext-pro": _build_flux_kontext_input,
    "black-forest-labs/flux-dev": _build_flux_dev_input,
    "fofr/consistent-character": _build_consistent_character_input,
}


def _input_builder_for(model_identifier: str) -> Callable[[ImageGenerationRequest], dict[str, Any]]:
    normalized_identifier = model_identifier.strip().lower()
    builder = _MODEL_INPUT_BUILDERS.get(normalized_identifier)
    if builder is None and ":" in normalized_identifier:
        base_identifier = normalized_identifier.split(":", maxsplit=1)[0]
        builder = _MODEL_INPUT_BUILDERS.get(base_identifier)
    if builder is None:
        supported_models = ", ".join(sorted(set(_MODEL_INPUT_BUILDERS)))
        raise ValidationError(
            "Model identifier "
            f"'{model_identifier}' is not configured with a default input payload. "
            f"Supported models: {supported_models}.",
            details={"model": model_identifier},
        )
    return builder


def _build_replicate_input_payload(
    *,
    model_identifier: str,
    request: ImageGenerationRequest,
) -> dict[str, Any]:
    payload = _input_builder_for(model_identifier)(request)
    if request.seed is not None:
        payload["seed"] = request.seed
    return payload


class ReplicateImageGenerator:
    """
    Convenience wrapper around the Replicate client for book illustrations.

    Parameters
    ----------
    api_token:
        Replicate API token. Falls back to ``REPLICATE_API_TOKEN`` environment variable.
    model_identifier:
        Model string in the ``owner/model`` or ``owner/model:version`` format. Falls back
        to ``BOOKSTUDIO_IMAGE_MODEL``, then ``REPLICATE_MODEL``, then FLUX Kontext Pro.
    client:
        Optional pre-configured :class:`replicate.Client`. Mainly useful for testing.
    retry_policy:
        Timeout and transient-error retry bounds for each call.
    """

    provider_name = "replicate"

    def __init__(
        self,
        *,
        api_token: str | None = None,
        model_identifier: str | None = None,
        client: replicate.Client | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._api_token = api_token or os.getenv("REPLICATE_API_TOKEN")
        if not self._api_token and not client:
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN or pass api_token."
            )

        self._model_identifier = (
            model_identifier
            or os.getenv("BOOKSTUDIO_IMAGE_MODEL")
            or os.getenv("REPLICATE_MODEL")
            or DEFAULT_IMAGE_MODEL
        )
        self._client = client or replicate.Client(api_token=self._api_token)
        self._retry_policy = retry_policy or RetryPolicy(timeout=120.0)
        self._sleep = sleep

    @property
    def model_identifier(self) -> str:
        """Return the model identifier currently used."""
        return self._model_identifier

    def ensure_supported_model(self) -> None:
        """Raise :class:`ValidationError` when no input payload exists for the model."""
        _input_builder_for(self._model_identifier)

    async def generate_image(self, request: ImageGenerationRequest) -> ImageGeneration:
        """
        Generate one image and return its URL.

        The prompt is checked against the image stage's prompt budget before
        any remote call. The returned ``seed`` echoes the requested seed.
        """
        require_within_budget(request.stage, request.prompt)
        replicate_input = _build_replicate_input_payload(
            model_identifier=self._model_identifier,
            request=request,
        )

        async def _attempt() -> str:
            output = await self._client.async_run(self._model_identifier, input=replicate_input)
            urls = normalize_image_outputs(output)
            if not urls:
                raise AIServiceError(
                    "Replicate returned no image output.",
                    details={"model": self._model_identifier},
                )
            return urls[0]

        started = time.perf_counter()
        image_url = await call_with_retry(
            _attempt,
            provider=self.provider_name,
            operation_name=f"{request.stage.value} image",
            policy=self._retry_policy,
            sleep=self._sleep,
        )
        return ImageGeneration(
            image_url=image_url,
            seed=request.seed,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            provider=self.provider_name,
            model=self._model_identifier,
        )

    def cancel_image_generation(self, token: CancelToken, reason: str | None = None) -> None:
        cancel_image_generation(token, reason)


def cancel_image_generation(token: CancelToken, reason: str | None = None) -> None:
    """
    Trip ``token`` so no further image call is issued.

    Calls already in flight are left to finish; the runner discards their result.
    """
    token.cancel(reason or "Image generation cancelled")
    logger.info("Image generation cancellation requested.")


def normalize_image_outputs(raw: Any) -> list[str]:
    """
    Normalize the image outputs returned by Replicate into a list of URL strings.
    """

    if raw is None:
        return []

    url = getattr(raw, "url", None)
    if isinstance(url, str):
        return [url]

    if isinstance(raw, str):
        return [raw]

    if isinstance(raw, bytes):
        return [raw.decode("utf-8", errors="ignore")]

    if isinstance(raw, IterableABC):
        collected = list(raw)
        if not collected:
            return []

        if all(isinstance(item, str) and len(item) == 1 for item in collected):
            return ["".join(collected)]

        normalized: list[str] = []
        for item in collected:
            normalized.extend(normalize_image_outputs(item))
        return normalized

    return [str(raw)]
