"""Gated ad generation endpoint."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends

from ...core.metrics import measure_time
from ...schemas.generation import AdVariantSchema, GenerateAdsRequest, GenerateAdsResponse, ResizedVariantSchema
from ...services.generation import GenerationOrchestrator, GenerationRequest
from ..deps import get_orchestrator, require_service_token

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_service_token)])


@router.post("/ads", response_model=GenerateAdsResponse)
def generate_ads(
    body: GenerateAdsRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Reserve credits, generate ad variants and fan them out to platform sizes."""
    request = GenerationRequest(
        account_id=body.account_id,
        prompt=body.prompt,
        business_context=body.business_context,
        audience=body.audience,
        campaign_parameters=body.campaign_parameters,
        platform=body.platform,
        type=body.type,
        request_id=body.request_id or uuid.uuid4().hex,
    )

    timings: dict[str, float] = {}
    with measure_time(timings, "generation_s"):
        result = orchestrator.generate_ads(request)

    logger.info(
        "Ad generation complete",
        extra={
            "data": {
                "request_id": result.request_id,
                "account_id": request.account_id,
                "attempts": result.attempts,
                "variants": len(result.variants),
                "warnings": len(result.warnings),
                **timings,
            }
        },
    )
    return GenerateAdsResponse(
        request_id=result.request_id,
        variants=result.variants,
        attempts=result.attempts,
        resized=[
            ResizedVariantSchema(
                sizes={key: AdVariantSchema.model_validate(v) for key, v in outcome.variants.items()},
                failed=outcome.failed,
            )
            for outcome in result.resized
        ],
        warnings=result.warnings,
        balance=result.balance_after,
    )
