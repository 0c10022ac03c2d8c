"""Gated ad generation: sanitize, attempt, validate, retry with prompt variation."""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Callable

from backend.app.core.config import settings
from backend.app.core.errors import (
    GenerationExhausted,
    InsufficientCredits,
    PromptTooShort,
    sanitize_error,
)
from backend.app.services.credit_gate import Authorization, CreditGate, Denied
from backend.app.services.providers import GenerationPayload, GenerationProvider, ProviderError
from backend.app.services.resizer import Resizer, ResizeOutcome

logger = logging.getLogger(__name__)

# Index 0 is the identity; retries rotate through the framings.
PROMPT_VARIATIONS: tuple[str, ...] = (
    "{prompt}",
    "Create a professional photograph: {prompt}",
    "Generate a commercial image showing: {prompt}",
    "Professional DSLR photo of: {prompt}",
    "High-quality advertising photograph depicting: {prompt}",
    "Commercial photography showcasing: {prompt}",
)

_DISALLOWED_CHARS = re.compile(r"[^\w\s,.!?-]")
_WHITESPACE = re.compile(r"\s+")

ASSET_URL_KEYS = ("assetUrl", "imageUrl", "url")


class GenerationState(StrEnum):
    SANITIZING = "sanitizing"
    ATTEMPTING = "attempting"
    VALIDATING = "validating"
    RETRYING = "retrying"
    COMPLETE = "complete"
    FAILED = "failed"


def sanitize_prompt(prompt: str, *, max_length: int | None = None) -> str:
    """Trim, collapse whitespace, drop disallowed characters and cap the length."""
    limit = settings.max_prompt_length if max_length is None else max_length
    cleaned = _DISALLOWED_CHARS.sub("", prompt or "")
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:limit]


def apply_prompt_variation(prompt: str, attempt: int) -> str:
    template = PROMPT_VARIATIONS[attempt % len(PROMPT_VARIATIONS)]
    return template.format(prompt=prompt)


@dataclass(frozen=True)
class GenerationRequest:
    account_id: str
    prompt: str
    business_context: dict[str, Any]
    audience: dict[str, Any] = field(default_factory=dict)
    campaign_parameters: dict[str, Any] = field(default_factory=dict)
    platform: str = "facebook"
    type: str = "complete_ad"
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class AttemptsResult:
    variants: list[dict[str, Any]]
    attempts: int
    prompts: list[str]


@dataclass(frozen=True)
class GenerationResult:
    request_id: str
    variants: list[dict[str, Any]]
    attempts: int
    prompts: list[str]
    resized: list[ResizeOutcome]
    warnings: list[str]
    balance_after: int


class GenerationOrchestrator:
    def __init__(
        self,
        provider: GenerationProvider,
        gate: CreditGate | None = None,
        resizer: Resizer | None = None,
        *,
        max_attempts: int | None = None,
        attempt_timeout_seconds: float | None = None,
        max_elapsed_seconds: float | None = None,
        retry_backoff_seconds: float | None = None,
        retry_backoff_factor: float | None = None,
        min_prompt_length: int | None = None,
        cost_credits: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.gate = gate
        self.resizer = resizer
        self.max_attempts = max(1, max_attempts or settings.generation_max_attempts)
        self.attempt_timeout_seconds = attempt_timeout_seconds or settings.generation_attempt_timeout_seconds
        self.max_elapsed_seconds = (
            settings.generation_max_elapsed_seconds if max_elapsed_seconds is None else max_elapsed_seconds
        )
        self.retry_backoff_seconds = (
            settings.generation_retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds
        )
        self.retry_backoff_factor = (
            settings.generation_retry_backoff_factor if retry_backoff_factor is None else retry_backoff_factor
        )
        self.min_prompt_length = settings.min_prompt_length if min_prompt_length is None else min_prompt_length
        self.cost_credits = cost_credits or settings.generation_cost_credits
        self._sleep = sleep
        self._clock = clock

    def prepare_prompt(self, prompt: str) -> str:
        cleaned = sanitize_prompt(prompt)
        if len(cleaned) < self.min_prompt_length:
            raise PromptTooShort(
                f"Prompt must be at least {self.min_prompt_length} characters after sanitizing"
            )
        return cleaned

    def run(self, request: GenerationRequest) -> AttemptsResult:
        """
        Drive the attempt loop for one request. No credits are touched here.

        Provider errors, timeouts and responses without variants are all
        failed attempts. Raises GenerationExhausted once ``max_attempts`` (or
        the elapsed-time cap) is reached.
        """
        self._transition(request, GenerationState.SANITIZING)
        prompt = self.prepare_prompt(request.prompt)

        started = self._clock()
        prompts: list[str] = []
        last_error = "no attempts made"
        for attempt in range(self.max_attempts):
            if attempt > 0:
                if self._elapsed_exceeded(started):
                    last_error = "elapsed time limit reached"
                    break
                self._transition(request, GenerationState.RETRYING, attempt=attempt)
                delay = self.retry_backoff_seconds * (self.retry_backoff_factor ** (attempt - 1))
                if delay > 0:
                    self._sleep(delay)

            attempt_prompt = apply_prompt_variation(prompt, attempt)
            prompts.append(attempt_prompt)
            self._transition(request, GenerationState.ATTEMPTING, attempt=attempt)
            try:
                response = self.provider.generate(
                    GenerationPayload(
                        type=request.type,
                        business_context=request.business_context,
                        audience=request.audience,
                        campaign_parameters=request.campaign_parameters,
                        prompt=attempt_prompt,
                        platform=request.platform,
                    ),
                    timeout=self.attempt_timeout_seconds,
                )
            except ProviderError as exc:
                last_error = sanitize_error(exc)
                logger.warning(
                    "Generation attempt failed",
                    extra={"data": {"request_id": request.request_id, "attempt": attempt + 1, "error": last_error}},
                )
                continue

            self._transition(request, GenerationState.VALIDATING, attempt=attempt)
            variants = response.get("variants") if isinstance(response, dict) else None
            if not isinstance(variants, list) or not variants:
                last_error = "provider response contained no variants"
                logger.warning(
                    "Generation attempt returned no variants",
                    extra={"data": {"request_id": request.request_id, "attempt": attempt + 1}},
                )
                continue

            self._transition(request, GenerationState.COMPLETE, attempt=attempt)
            return AttemptsResult(variants=variants, attempts=attempt + 1, prompts=prompts)

        self._transition(request, GenerationState.FAILED)
        raise GenerationExhausted(
            f"Ad generation failed after {len(prompts)} attempts: {last_error}",
            attempts=len(prompts),
        )

    def generate_ads(self, request: GenerationRequest) -> GenerationResult:
        """Sanitize, reserve credits, generate, fan out sizes; refund on any terminal failure."""
        if self.gate is None:
            raise RuntimeError("GenerationOrchestrator.generate_ads requires a credit gate")

        # Rejects short prompts before any credits are reserved.
        prompt = self.prepare_prompt(request.prompt)
        request = replace(request, prompt=prompt)

        decision = self.gate.check_and_reserve(
            request.account_id,
            self.cost_credits,
            request_id=request.request_id,
        )
        if isinstance(decision, Denied):
            raise InsufficientCredits(decision.reason)

        try:
            attempts = self.run(request)
            resized, warnings = self._fan_out(attempts.variants, platform=request.platform)
        except Exception as exc:
            self._refund_best_effort(decision, error=sanitize_error(exc))
            raise

        return GenerationResult(
            request_id=request.request_id,
            variants=attempts.variants,
            attempts=attempts.attempts,
            prompts=attempts.prompts,
            resized=resized,
            warnings=warnings,
            balance_after=decision.balance_after,
        )

    def _fan_out(self, variants: list[dict[str, Any]], *, platform: str) -> tuple[list[ResizeOutcome], list[str]]:
        if self.resizer is None:
            return [], []
        outcomes: list[ResizeOutcome] = []
        warnings: list[str] = []
        for index, variant in enumerate(variants):
            asset_url = _asset_url(variant)
            if not asset_url:
                continue
            outcome = self.resizer.enforce_policy(self.resizer.fan_out(asset_url, platform=platform))
            for key, error in sorted(outcome.failed.items()):
                warnings.append(f"Variant {index + 1}: size {key} failed: {error}")
            outcomes.append(outcome)
        return outcomes, warnings

    def _refund_best_effort(self, authorization: Authorization, *, error: str) -> None:
        """Refund the reservation. Never raises; a failed refund stays visible in the audit trail."""
        assert self.gate is not None
        try:
            self.gate.refund(authorization, error=error)
        except Exception:
            logger.exception(
                "Failed to refund reserved credits (account_id=%s request_id=%s)",
                authorization.account_id,
                authorization.request_id,
            )

    def _elapsed_exceeded(self, started: float) -> bool:
        if not self.max_elapsed_seconds:
            return False
        return self._clock() - started >= self.max_elapsed_seconds

    @staticmethod
    def _transition(request: GenerationRequest, state: GenerationState, *, attempt: int | None = None) -> None:
        logger.debug(
            "Generation state %s",
            state.value,
            extra={"data": {"request_id": request.request_id, "state": state.value, "attempt": attempt}},
        )


def _asset_url(variant: Any) -> str | None:
    if not isinstance(variant, dict):
        return None
    for key in ASSET_URL_KEYS:
        value = variant.get(key)
        if isinstance(value, str) and value:
            return value
    return None
