"""
Runtime configuration for the book pipeline, read from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from .budget import GLOBAL_LIMITS, IMAGE_LIMITS
from .retry import RetryPolicy

DEFAULT_TEXT_MODEL = "gpt-4.1-mini"
DEFAULT_IMAGE_MODEL = "black-forest-labs/flux-kontext-pro"
SUPPORTED_IMAGE_MODELS = (
    "black-forest-labs/flux-kontext-pro",
    "black-forest-labs/flux-dev",
    "fofr/consistent-character",
)


def is_supported_image_model(model_identifier: str) -> bool:
    """Accept ``owner/model`` or ``owner/model:version`` for a supported model."""
    base = model_identifier.strip().lower().split(":", maxsplit=1)[0]
    return base in SUPPORTED_IMAGE_MODELS


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _first_env(environ: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = environ.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def _int_env(environ: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = _first_env(environ, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Expected an integer for {name}, got {raw!r}") from exc


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = _first_env(environ, name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Expected a number for {name}, got {raw!r}") from exc


def _bool_env(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean for {name}, got {raw!r}")


@dataclass(frozen=True)
class PipelineSettings:
    """
    Knobs for one pipeline instance.

    Attributes
    ----------
    text_model / image_model:
        LiteLLM model name and Replicate model identifier.
    text_timeout_seconds / image_timeout_seconds:
        Per-attempt timeout for a provider call.
    provider_max_retries / provider_base_delay_seconds:
        Transient-error retries inside the provider clients. Independent of
        the single schema-repair call made by the stage runner.
    persist_attempts:
        Project-store write attempts before a stage reports ``STORAGE_ERROR``.
    variants_per_illustration / cover_variants:
        Requested image variants, clamped to the image limits.
    include_back_cover:
        Generate a back cover after the front cover.
    locked_seed:
        Seed shared by every illustration; derived from the project when unset.
    vary_seed_per_variant:
        Offset the shared seed by the variant index.
    account_id:
        Credit-ledger account charged for billable calls.
    """

    text_model: str = DEFAULT_TEXT_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    text_timeout_seconds: float = 60.0
    image_timeout_seconds: float = 120.0
    provider_max_retries: int = 2
    provider_base_delay_seconds: float = 1.0
    persist_attempts: int = 3
    variants_per_illustration: int = 2
    cover_variants: int = 2
    include_back_cover: bool = False
    locked_seed: int | None = None
    vary_seed_per_variant: bool = False
    account_id: str = "default"
    temperature: float = 0.7
    total_book_max_tokens: int = GLOBAL_LIMITS.total_book_max_tokens

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineSettings":
        env = os.environ if environ is None else environ
        return cls(
            text_model=_first_env(env, "BOOKSTUDIO_TEXT_MODEL", "LITELLM_MODEL") or DEFAULT_TEXT_MODEL,
            image_model=_first_env(env, "BOOKSTUDIO_IMAGE_MODEL", "REPLICATE_MODEL")
            or DEFAULT_IMAGE_MODEL,
            text_timeout_seconds=_float_env(env, "BOOKSTUDIO_TEXT_TIMEOUT", 60.0),
            image_timeout_seconds=_float_env(env, "BOOKSTUDIO_IMAGE_TIMEOUT", 120.0),
            provider_max_retries=_int_env(env, "BOOKSTUDIO_PROVIDER_RETRIES", 2),
            provider_base_delay_seconds=_float_env(env, "BOOKSTUDIO_RETRY_BASE_DELAY", 1.0),
            persist_attempts=_int_env(env, "BOOKSTUDIO_PERSIST_ATTEMPTS", 3),
            variants_per_illustration=_int_env(env, "BOOKSTUDIO_VARIANTS_PER_ILLUSTRATION", 2),
            cover_variants=_int_env(env, "BOOKSTUDIO_COVER_VARIANTS", 2),
            include_back_cover=_bool_env(env, "BOOKSTUDIO_INCLUDE_BACK_COVER", False),
            locked_seed=_int_env(env, "BOOKSTUDIO_LOCKED_SEED", None),
            vary_seed_per_variant=_bool_env(env, "BOOKSTUDIO_VARY_SEED_PER_VARIANT", False),
            account_id=_first_env(env, "BOOKSTUDIO_ACCOUNT_ID") or "default",
            temperature=_float_env(env, "BOOKSTUDIO_TEMPERATURE", 0.7),
            total_book_max_tokens=_int_env(
                env, "BOOKSTUDIO_TOTAL_BOOK_MAX_TOKENS", GLOBAL_LIMITS.total_book_max_tokens
            ),
        )

    def validate(self) -> list[str]:
        """Return human-readable configuration problems; empty when valid."""
        problems: list[str] = []
        if not self.text_model:
            problems.append("text_model must be set.")
        if not self.image_model:
            problems.append("image_model must be set.")
        elif not is_supported_image_model(self.image_model):
            problems.append(
                f"image_model {self.image_model!r} is not supported; use one of: "
                + ", ".join(SUPPORTED_IMAGE_MODELS)
                + "."
            )
        if self.text_timeout_seconds <= 0 or self.image_timeout_seconds <= 0:
            problems.append("Provider timeouts must be positive.")
        if self.provider_max_retries < 0:
            problems.append("provider_max_retries cannot be negative.")
        if self.provider_base_delay_seconds < 0:
            problems.append("provider_base_delay_seconds cannot be negative.")
        if self.persist_attempts < 1:
            problems.append("persist_attempts must be at least 1.")
        if not 1 <= self.variants_per_illustration <= IMAGE_LIMITS.illustrations:
            problems.append(
                f"variants_per_illustration must be between 1 and {IMAGE_LIMITS.illustrations}."
            )
        if not 1 <= self.cover_variants <= IMAGE_LIMITS.cover:
            problems.append(f"cover_variants must be between 1 and {IMAGE_LIMITS.cover}.")
        if not 0.0 <= self.temperature <= 2.0:
            problems.append("temperature must be between 0 and 2.")
        if self.total_book_max_tokens <= 0:
            problems.append("total_book_max_tokens must be positive.")
        return problems

    def text_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.provider_max_retries,
            base_delay=self.provider_base_delay_seconds,
            timeout=self.text_timeout_seconds,
        )

    def image_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.provider_max_retries,
            base_delay=self.provider_base_delay_seconds,
            timeout=self.image_timeout_seconds,
        )
