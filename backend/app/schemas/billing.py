from __future__ import annotations

from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(min_length=1, max_length=64, validation_alias=AliasChoices("account_id", "accountId"))
    price_id: str = Field(min_length=1, max_length=255, validation_alias=AliasChoices("price_id", "priceId"))
    mode: Literal["payment", "subscription"] = "subscription"
    email: Optional[str] = Field(default=None, max_length=320)
    success_url: Optional[str] = Field(
        default=None,
        max_length=2000,
        validation_alias=AliasChoices("success_url", "successUrl"),
    )
    cancel_url: Optional[str] = Field(
        default=None,
        max_length=2000,
        validation_alias=AliasChoices("cancel_url", "cancelUrl"),
    )


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = None
