from __future__ import annotations

import threading

import pytest

from backend.app.core.config import ResizePolicy
from backend.app.core.errors import PartialResizeFailure
from backend.app.services.providers import ProviderError, ProviderTimeout
from backend.app.services.resizer import AdSize, Resizer, sizes_from_config

SOURCE = "https://cdn.example.com/source.png"

SIZES = [
    AdSize(1080, 1080, "Square (1:1)"),
    AdSize(1200, 628, "Landscape (1.91:1)"),
    AdSize(1080, 1920, "Story (9:16)"),
]


class FlakyResizeProvider:
    """Fails a size ``failures[(w, h)]`` times before succeeding."""

    def __init__(self, failures: dict[tuple[int, int], int] | None = None):
        self.failures = dict(failures or {})
        self.calls: list[tuple[int, int]] = []
        self._lock = threading.Lock()

    def resize(self, source_asset_url: str, width: int, height: int, *, timeout: float) -> str:
        with self._lock:
            self.calls.append((width, height))
            remaining = self.failures.get((width, height), 0)
            if remaining:
                self.failures[(width, height)] = remaining - 1
                raise ProviderTimeout(f"{width}x{height} timed out")
        return f"https://cdn.example.com/{width}x{height}.png"


def test_fan_out_produces_every_size() -> None:
    resizer = Resizer(FlakyResizeProvider(), sizes=SIZES, policy=ResizePolicy.PARTIAL, max_attempts=1)

    outcome = resizer.fan_out(SOURCE, platform="instagram")

    assert outcome.complete is True
    assert sorted(outcome.variants) == ["1080x1080", "1080x1920", "1200x628"]
    story = outcome.variants["1080x1920"]
    assert story.platform == "instagram"
    assert story.size_label == "Story (9:16)"
    assert story.asset_url.endswith("1080x1920.png")


def test_one_failing_size_does_not_affect_the_others() -> None:
    provider = FlakyResizeProvider({(1080, 1920): 10})
    resizer = Resizer(provider, sizes=SIZES, policy=ResizePolicy.PARTIAL, max_attempts=2)

    outcome = resizer.enforce_policy(resizer.fan_out(SOURCE, platform="facebook"))

    assert outcome.complete is False
    assert sorted(outcome.variants) == ["1080x1080", "1200x628"]
    assert list(outcome.failed) == ["1080x1920"]
    assert "timed out" in outcome.failed["1080x1920"]
    assert provider.calls.count((1080, 1920)) == 2


def test_unexpected_provider_exception_only_fails_its_size() -> None:
    class BrokenLandscapeProvider(FlakyResizeProvider):
        def resize(self, source_asset_url: str, width: int, height: int, *, timeout: float) -> str:
            if (width, height) == (1200, 628):
                raise KeyError("assetUrl")
            return super().resize(source_asset_url, width, height, timeout=timeout)

    resizer = Resizer(BrokenLandscapeProvider(), sizes=SIZES, policy=ResizePolicy.PARTIAL, max_attempts=1)

    outcome = resizer.enforce_policy(resizer.fan_out(SOURCE, platform="facebook"))

    assert sorted(outcome.variants) == ["1080x1080", "1080x1920"]
    assert list(outcome.failed) == ["1200x628"]
    assert "assetUrl" in outcome.failed["1200x628"]


def test_failed_size_is_retried_until_it_succeeds() -> None:
    provider = FlakyResizeProvider({(1200, 628): 1})
    resizer = Resizer(provider, sizes=SIZES, policy=ResizePolicy.STRICT, max_attempts=2)

    outcome = resizer.enforce_policy(resizer.fan_out(SOURCE, platform="facebook"))

    assert outcome.complete is True
    assert provider.calls.count((1200, 628)) == 2


def test_strict_policy_raises_for_missing_required_size() -> None:
    resizer = Resizer(
        FlakyResizeProvider({(1080, 1920): 5}), sizes=SIZES, policy=ResizePolicy.STRICT, max_attempts=1
    )

    with pytest.raises(PartialResizeFailure) as exc_info:
        resizer.enforce_policy(resizer.fan_out(SOURCE, platform="facebook"))

    assert exc_info.value.failed.keys() == {"1080x1920"}


def test_strict_policy_tolerates_optional_sizes() -> None:
    sizes = [AdSize(1080, 1080, "Square"), AdSize(1080, 1920, "Story", required=False)]
    resizer = Resizer(FlakyResizeProvider({(1080, 1920): 5}), sizes=sizes, policy=ResizePolicy.STRICT, max_attempts=1)

    outcome = resizer.enforce_policy(resizer.fan_out(SOURCE, platform="facebook"))

    assert list(outcome.failed) == ["1080x1920"]


def test_no_sizes_means_empty_outcome() -> None:
    class _Explodes:
        def resize(self, *args, **kwargs):
            raise ProviderError("should not be called")

    outcome = Resizer(_Explodes(), sizes=[], max_attempts=1).fan_out(SOURCE, platform="facebook")

    assert outcome.variants == {} and outcome.failed == {}


def test_sizes_from_config_defaults_label_and_required() -> None:
    sizes = sizes_from_config([{"width": 300, "height": 250}, {"width": 728, "height": 90, "required": False}])

    assert sizes[0] == AdSize(300, 250, "300x250", True)
    assert sizes[1].required is False
