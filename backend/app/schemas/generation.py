from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class GenerateAdsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(min_length=1, max_length=64, validation_alias=AliasChoices("account_id", "accountId"))
    prompt: str = Field(max_length=5000)
    business_context: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("business_context", "businessContext"),
    )
    audience: Dict[str, Any] = Field(default_factory=dict)
    campaign_parameters: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("campaign_parameters", "campaignParameters"),
    )
    platform: str = Field(default="facebook", max_length=32)
    type: str = Field(default="complete_ad", max_length=32)
    request_id: Optional[str] = Field(
        default=None,
        min_length=8,
        max_length=64,
        validation_alias=AliasChoices("request_id", "requestId"),
    )


class AdVariantSchema(BaseModel):
    model_config = {'from_attributes': True}

    platform: str
    size_label: str
    width: int
    height: int
    asset_url: str


class ResizedVariantSchema(BaseModel):
    sizes: Dict[str, AdVariantSchema]
    failed: Dict[str, str]


class GenerateAdsResponse(BaseModel):
    request_id: str
    variants: List[Dict[str, Any]]
    attempts: int
    resized: List[ResizedVariantSchema]
    warnings: List[str]
    balance: int
