from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest
from sqlalchemy import select

from backend.app.core.config import ResizePolicy
from backend.app.core.database import Database
from backend.app.core.errors import (
    GenerationExhausted,
    IdempotencyConflict,
    InsufficientCredits,
    PartialResizeFailure,
    PromptTooShort,
)
from backend.app.db.models import DbCreditOperation
from backend.app.services.credit_gate import CreditGate
from backend.app.services.generation import (
    PROMPT_VARIATIONS,
    GenerationOrchestrator,
    GenerationRequest,
    apply_prompt_variation,
    sanitize_prompt,
)
from backend.app.services.ledger import CreditLedger
from backend.app.services.providers import GenerationPayload, ProviderError, ProviderTimeout
from backend.app.services.resizer import AdSize, Resizer

PROMPT = "A cozy coffee shop at sunrise with latte art"


class ScriptedProvider:
    """Replays a list of responses; exceptions in the script are raised."""

    def __init__(self, script: list[Any]):
        self.script = list(script)
        self.payloads: list[GenerationPayload] = []

    def generate(self, payload: GenerationPayload, *, timeout: float) -> dict[str, Any]:
        self.payloads.append(payload)
        item = self.script.pop(0) if self.script else ProviderError("script exhausted")
        if isinstance(item, Exception):
            raise item
        return item


class FailingSizeProvider:
    def __init__(self, failing: set[tuple[int, int]]):
        self.failing = failing

    def resize(self, source_asset_url: str, width: int, height: int, *, timeout: float) -> str:
        if (width, height) in self.failing:
            raise ProviderError(f"cannot produce {width}x{height}")
        return f"{source_asset_url}?w={width}&h={height}"


def _ok(url: str = "https://cdn.example.com/ad.png") -> dict[str, Any]:
    return {"variants": [{"headline": "Wake up", "assetUrl": url}]}


def _orchestrator(provider, gate: CreditGate | None = None, resizer: Resizer | None = None, **kwargs):
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("retry_backoff_seconds", 0)
    kwargs.setdefault("max_elapsed_seconds", 0)
    kwargs.setdefault("min_prompt_length", 20)
    kwargs.setdefault("cost_credits", 1)
    return GenerationOrchestrator(provider, gate, resizer, attempt_timeout_seconds=5, **kwargs)


def _request(**overrides) -> GenerationRequest:
    values = {
        "account_id": "acct-1",
        "prompt": PROMPT,
        "business_context": {"name": "Bean There"},
        "request_id": "req-1",
    }
    values.update(overrides)
    return GenerationRequest(**values)


def _rows(db: Database) -> list[DbCreditOperation]:
    with db.session() as session:
        return list(session.scalars(select(DbCreditOperation)).all())


def test_sanitize_prompt_strips_markup_and_collapses_whitespace() -> None:
    assert sanitize_prompt("  <b>Hello</b>   world;  ") == "bHellob world"
    assert sanitize_prompt("x" * 50, max_length=10) == "x" * 10


def test_prompt_variations_are_distinct_per_attempt() -> None:
    prompts = {apply_prompt_variation("coffee", attempt) for attempt in range(len(PROMPT_VARIATIONS))}
    assert len(prompts) == len(PROMPT_VARIATIONS)
    assert apply_prompt_variation("coffee", 0) == "coffee"


def test_run_retries_with_varied_prompts_until_variants_arrive() -> None:
    provider = ScriptedProvider([ProviderError("HTTP 500"), {"variants": []}, _ok()])
    result = _orchestrator(provider).run(_request())

    assert result.attempts == 3
    assert len(set(result.prompts)) == 3
    assert [p.prompt for p in provider.payloads] == result.prompts
    assert result.variants[0]["headline"] == "Wake up"


def test_timeout_counts_as_failed_attempt() -> None:
    provider = ScriptedProvider([ProviderTimeout("timed out"), _ok()])

    result = _orchestrator(provider).run(_request())

    assert result.attempts == 2


def test_backoff_grows_between_attempts() -> None:
    sleeps: list[float] = []
    provider = ScriptedProvider([ProviderError("a"), ProviderError("b"), _ok()])

    _orchestrator(
        provider, retry_backoff_seconds=1.0, retry_backoff_factor=2.0, sleep=sleeps.append
    ).run(_request())

    assert sleeps == [1.0, 2.0]


def test_elapsed_cap_stops_retries() -> None:
    ticks = iter([0.0, 100.0])
    provider = ScriptedProvider([ProviderError("slow"), _ok()])
    orchestrator = _orchestrator(provider, max_attempts=5, max_elapsed_seconds=10, clock=lambda: next(ticks))

    with pytest.raises(GenerationExhausted) as exc_info:
        orchestrator.run(_request())

    assert exc_info.value.attempts == 1
    assert len(provider.payloads) == 1


def test_successful_generation_debits_exactly_once(gate: CreditGate, ledger: CreditLedger, db: Database) -> None:
    ledger.grant_credits("acct-1", 5, reason="manual_grant")
    provider = ScriptedProvider([ProviderError("flaky"), _ok()])

    result = _orchestrator(provider, gate).generate_ads(_request())

    assert result.balance_after == 4
    assert result.attempts == 2
    assert ledger.get_balance("acct-1") == 4
    debits = [row for row in _rows(db) if row.kind == "debit" and row.status == "success"]
    assert len(debits) == 1
    assert debits[0].idempotency_key == "generation_debit:req-1"


def test_exhaustion_refunds_reserved_credits(gate: CreditGate, ledger: CreditLedger, db: Database) -> None:
    ledger.grant_credits("acct-1", 5, reason="manual_grant")
    provider = ScriptedProvider([ProviderError("down")] * 3)

    with pytest.raises(GenerationExhausted) as exc_info:
        _orchestrator(provider, gate).generate_ads(_request())

    assert exc_info.value.attempts == 3
    assert ledger.get_balance("acct-1") == 5
    refunds = [row for row in _rows(db) if row.reason == "refund"]
    assert len(refunds) == 1
    assert refunds[0].amount == 1


def test_short_prompt_is_rejected_before_any_debit(gate: CreditGate, ledger: CreditLedger, db: Database) -> None:
    ledger.grant_credits("acct-1", 5, reason="manual_grant")
    provider = ScriptedProvider([_ok()])

    with pytest.raises(PromptTooShort):
        _orchestrator(provider, gate).generate_ads(_request(prompt="  <tiny>  "))

    assert provider.payloads == []
    assert ledger.get_balance("acct-1") == 5
    assert [row.kind for row in _rows(db)] == ["grant"]


def test_insufficient_credits_never_calls_provider(gate: CreditGate, ledger: CreditLedger) -> None:
    provider = ScriptedProvider([_ok()])

    with pytest.raises(InsufficientCredits) as exc_info:
        _orchestrator(provider, gate).generate_ads(_request())

    assert "Required: 1, available: 0" in str(exc_info.value)
    assert provider.payloads == []


def test_partial_resize_keeps_successful_sizes(gate: CreditGate, ledger: CreditLedger) -> None:
    ledger.grant_credits("acct-1", 2, reason="manual_grant")
    resizer = Resizer(
        FailingSizeProvider({(1080, 1920)}),
        sizes=[AdSize(1080, 1080, "Square"), AdSize(1200, 628, "Landscape"), AdSize(1080, 1920, "Story")],
        policy=ResizePolicy.PARTIAL,
        max_attempts=1,
    )

    result = _orchestrator(ScriptedProvider([_ok()]), gate, resizer).generate_ads(_request())

    assert len(result.resized) == 1
    assert sorted(result.resized[0].variants) == ["1080x1080", "1200x628"]
    assert "1080x1920" in result.resized[0].failed
    assert result.warnings and "1080x1920" in result.warnings[0]
    assert ledger.get_balance("acct-1") == 1


def test_strict_resize_failure_refunds(gate: CreditGate, ledger: CreditLedger) -> None:
    ledger.grant_credits("acct-1", 2, reason="manual_grant")
    resizer = Resizer(
        FailingSizeProvider({(1080, 1920)}),
        sizes=[AdSize(1080, 1080, "Square"), AdSize(1080, 1920, "Story")],
        policy=ResizePolicy.STRICT,
        max_attempts=1,
    )

    with pytest.raises(PartialResizeFailure) as exc_info:
        _orchestrator(ScriptedProvider([_ok()]), gate, resizer).generate_ads(_request())

    assert list(exc_info.value.failed) == ["1080x1920"]
    assert ledger.get_balance("acct-1") == 2


def test_reused_request_id_after_refund_is_rejected(gate: CreditGate, ledger: CreditLedger) -> None:
    ledger.grant_credits("acct-1", 1, reason="manual_grant")
    failing = ScriptedProvider([ProviderError("down")] * 3)
    with pytest.raises(GenerationExhausted):
        _orchestrator(failing, gate).generate_ads(_request(request_id="client-req-1"))
    assert ledger.get_balance("acct-1") == 1

    provider = ScriptedProvider([_ok()])
    with pytest.raises(IdempotencyConflict):
        _orchestrator(provider, gate).generate_ads(_request(request_id="client-req-1"))

    assert provider.payloads == []
    assert ledger.get_balance("acct-1") == 1

    fresh = _orchestrator(ScriptedProvider([_ok()]), gate).generate_ads(_request(request_id="client-req-2"))
    assert fresh.balance_after == 0
    assert ledger.get_balance("acct-1") == 0


def test_concurrent_requests_sharing_a_request_id_run_the_provider_once(
    gate: CreditGate, ledger: CreditLedger
) -> None:
    ledger.grant_credits("acct-1", 5, reason="manual_grant")
    provider = ScriptedProvider([_ok() for _ in range(4)])
    orchestrator = _orchestrator(provider, gate)

    def _attempt(_: int) -> str:
        try:
            orchestrator.generate_ads(_request(request_id="shared"))
        except IdempotencyConflict:
            return "conflict"
        return "generated"

    with ThreadPoolExecutor(max_workers=4) as executor:
        outcomes = list(executor.map(_attempt, range(4)))

    assert outcomes.count("generated") == 1
    assert outcomes.count("conflict") == 3
    assert len(provider.payloads) == 1
    assert ledger.get_balance("acct-1") == 4
