from __future__ import annotations

from typing import Annotated, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

AccountId = Annotated[str, Field(min_length=1, max_length=64)]


class CreditCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: AccountId = Field(validation_alias=AliasChoices("account_id", "accountId"))
    required_credits: int = Field(
        default=1,
        ge=1,
        le=10_000,
        validation_alias=AliasChoices("required_credits", "requiredCredits"),
    )


class CreditCheckResponse(BaseModel):
    has_credits: bool
    balance: int
    error_message: Optional[str] = None


class CreditMutationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: AccountId = Field(validation_alias=AliasChoices("account_id", "accountId"))
    amount: int = Field(ge=1, le=1_000_000)
    idempotency_key: Optional[str] = Field(
        default=None,
        max_length=128,
        validation_alias=AliasChoices("idempotency_key", "idempotencyKey"),
    )
    reason: Optional[str] = Field(default=None, max_length=64)


class CreditMutationResponse(BaseModel):
    success: bool
    current_credits: int
    applied: bool = False
    error_message: Optional[str] = None


class CreditOperationSchema(BaseModel):
    model_config = {'from_attributes': True}

    id: str
    kind: str
    amount: int
    status: str
    reason: str
    error_message: Optional[str]
    reference_id: Optional[str]
    balance_after: Optional[int]
    created_at: int


class SubscriptionSchema(BaseModel):
    model_config = {'from_attributes': True}

    plan_id: Optional[str]
    stripe_subscription_id: str
    active: bool
    current_period_end: Optional[int]


class AccountCreditsResponse(BaseModel):
    account_id: str
    balance: int
    operations: list[CreditOperationSchema]
    subscription: Optional[SubscriptionSchema] = None
