"""Fan one generated asset out into per-platform size variants."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable

from backend.app.core.config import ResizePolicy, settings
from backend.app.core.errors import PartialResizeFailure, sanitize_message
from backend.app.services.providers import ProviderError, ResizeProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdSize:
    width: int
    height: int
    label: str
    required: bool = True

    @property
    def key(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class AdVariant:
    platform: str
    size_label: str
    width: int
    height: int
    asset_url: str


@dataclass(frozen=True)
class ResizeOutcome:
    variants: dict[str, AdVariant] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed


def sizes_from_config(targets: Iterable[dict[str, Any]]) -> list[AdSize]:
    sizes = []
    for target in targets:
        width = int(target["width"])
        height = int(target["height"])
        sizes.append(
            AdSize(
                width=width,
                height=height,
                label=str(target.get("label") or f"{width}x{height}"),
                required=bool(target.get("required", True)),
            )
        )
    return sizes


class Resizer:
    """
    Requests every target size independently and concurrently.

    A size that keeps failing after ``max_attempts`` is reported in
    ``ResizeOutcome.failed``; the other sizes are unaffected.
    """

    def __init__(
        self,
        provider: ResizeProvider,
        *,
        sizes: list[AdSize] | None = None,
        policy: ResizePolicy | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.provider = provider
        self.sizes = sizes if sizes is not None else sizes_from_config(settings.resize_targets)
        self.policy = policy or settings.resize_policy
        self.timeout_seconds = timeout_seconds or settings.resize_timeout_seconds
        self.max_attempts = max(1, max_attempts or settings.resize_max_attempts)
        self.max_workers = max(1, max_workers or settings.resize_max_workers)

    def fan_out(self, source_asset_url: str, *, platform: str) -> ResizeOutcome:
        if not self.sizes:
            return ResizeOutcome()

        workers = min(self.max_workers, len(self.sizes))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                size.key: (size, executor.submit(self._resize_one, source_asset_url, size))
                for size in self.sizes
            }
            variants: dict[str, AdVariant] = {}
            failed: dict[str, str] = {}
            for key, (size, future) in futures.items():
                try:
                    asset_url = future.result()
                except ProviderError as exc:
                    failed[key] = sanitize_message(str(exc))
                    continue
                except Exception as exc:
                    logger.exception("Resize %s failed unexpectedly", key)
                    failed[key] = sanitize_message(str(exc)) or exc.__class__.__name__
                    continue
                variants[key] = AdVariant(
                    platform=platform,
                    size_label=size.label,
                    width=size.width,
                    height=size.height,
                    asset_url=asset_url,
                )

        outcome = ResizeOutcome(variants=variants, failed=failed)
        if failed:
            logger.warning(
                "Resize fan-out incomplete",
                extra={"data": {"platform": platform, "failed": failed, "succeeded": sorted(variants)}},
            )
        return outcome

    def enforce_policy(self, outcome: ResizeOutcome) -> ResizeOutcome:
        """Under the strict policy a missing required size is a hard failure."""
        if self.policy != ResizePolicy.STRICT:
            return outcome
        required = {size.key for size in self.sizes if size.required}
        missing = {key: err for key, err in outcome.failed.items() if key in required}
        if missing:
            raise PartialResizeFailure(
                f"Missing required ad sizes: {', '.join(sorted(missing))}",
                failed=missing,
            )
        return outcome

    def _resize_one(self, source_asset_url: str, size: AdSize) -> str:
        last_error: ProviderError | None = None
        for attempt in range(self.max_attempts):
            try:
                return self.provider.resize(
                    source_asset_url,
                    size.width,
                    size.height,
                    timeout=self.timeout_seconds,
                )
            except ProviderError as exc:
                last_error = exc
                logger.info("Resize %s attempt %d failed: %s", size.key, attempt + 1, exc)
        assert last_error is not None
        raise last_error
