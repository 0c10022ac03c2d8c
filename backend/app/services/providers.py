"""HTTP clients for the opaque ad generation and resize services."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Protocol

import requests

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Transport or protocol failure talking to a provider."""


class ProviderTimeout(ProviderError):
    """The provider did not answer within the per-call timeout."""


@dataclass(frozen=True)
class GenerationPayload:
    type: str
    business_context: Dict[str, Any]
    audience: Dict[str, Any] = field(default_factory=dict)
    campaign_parameters: Dict[str, Any] = field(default_factory=dict)
    prompt: str = ""
    platform: str = "facebook"

    def to_json(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "businessContext": self.business_context,
            "audience": self.audience,
            "campaignParameters": self.campaign_parameters,
            "prompt": self.prompt,
            "platform": self.platform,
        }


class GenerationProvider(Protocol):
    def generate(self, payload: GenerationPayload, *, timeout: float) -> Dict[str, Any]:
        ...


class ResizeProvider(Protocol):
    def resize(self, source_asset_url: str, width: int, height: int, *, timeout: float) -> str:
        ...


def _post_json(url: str, body: Dict[str, Any], *, headers: Dict[str, str], timeout: float) -> Dict[str, Any]:
    try:
        resp = requests.post(url, json=body, headers=headers, timeout=timeout)
    except requests.Timeout as exc:
        raise ProviderTimeout(f"Provider timed out after {timeout:g}s") from exc
    except requests.RequestException as exc:
        raise ProviderError(f"Provider request failed: {exc}") from exc

    if resp.status_code >= 400:
        raise ProviderError(f"Provider returned HTTP {resp.status_code}")
    try:
        payload = resp.json()
    except ValueError as exc:
        raise ProviderError("Provider returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise ProviderError("Provider returned an unexpected payload")
    return payload


class HttpGenerationProvider:
    def __init__(self, url: str | None = None, api_key: str | None = None) -> None:
        self.url = url or settings.generation_provider_url
        self.api_key = api_key or settings.generation_provider_api_key

    def generate(self, payload: GenerationPayload, *, timeout: float) -> Dict[str, Any]:
        if not self.url:
            raise ProviderError("Generation provider URL is not configured")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return _post_json(self.url, payload.to_json(), headers=headers, timeout=timeout)


class HttpResizeProvider:
    def __init__(self, url: str | None = None) -> None:
        self.url = url or settings.resize_provider_url

    def resize(self, source_asset_url: str, width: int, height: int, *, timeout: float) -> str:
        if not self.url:
            raise ProviderError("Resize provider URL is not configured")
        data = _post_json(
            self.url,
            {"sourceAssetUrl": source_asset_url, "targetWidth": width, "targetHeight": height},
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
        resized = data.get("resizedAssetUrl")
        if not resized or not isinstance(resized, str):
            raise ProviderError("Resize provider returned no resizedAssetUrl")
        return resized
