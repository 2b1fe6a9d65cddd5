from __future__ import annotations

import asyncio

import pytest

from locker.constitution import ActionKind, ConstitutionViolation, HealthStatus, RiskLevel
from locker.models import ConstraintConfig
from locker.oracle import LLMPolicyOracle, OracleError, ProposedAction
from locker.policy import PolicyEngine, max_unlock_amount

from fakes import NOW, FakeOpenAIClient, FakeOracle, make_lock, make_state


def _proposal(action: ActionKind, **kwargs) -> ProposedAction:
    kwargs.setdefault("confidence", 0.8)
    kwargs.setdefault("reasoning", "test proposal")
    return ProposedAction(action=action, **kwargs)


class _Clock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ============================================================
# Clamp
# ============================================================

def test_unlock_capped_to_ratio_of_total_locked() -> None:
    engine = PolicyEngine(FakeOracle(), ConstraintConfig(max_unlock_ratio=0.1))
    state = make_state(total_locked=1_000_000)
    locks = [make_lock(0, 1_000_000)]

    decision = engine.apply_constraints(
        _proposal(ActionKind.UNLOCK, lock_id=0, amount=500_000), state, locks
    )

    assert decision.action == ActionKind.UNLOCK
    assert decision.amount == 100_000
    assert any("capped to 10%" in c for c in decision.constraints)


@pytest.mark.parametrize("proposed", [0, 1, 99_999, 100_000, 100_001, 1_000_000, 10**30])
@pytest.mark.parametrize("ratio", [0.0, 0.05, 0.1, 0.333, 1.0])
def test_clamped_amount_never_exceeds_ratio(proposed: int, ratio: float) -> None:
    total = 1_000_000
    engine = PolicyEngine(FakeOracle(), ConstraintConfig(max_unlock_ratio=ratio))
    decision = engine.apply_constraints(
        _proposal(ActionKind.UNLOCK, lock_id=0, amount=proposed),
        make_state(total_locked=total),
        [make_lock(0, total)],
    )
    assert decision.amount <= total * ratio
    assert decision.amount == min(proposed, max_unlock_amount(total, ratio))


def test_max_unlock_amount_uses_integer_basis_points() -> None:
    assert max_unlock_amount(1_000_000, 0.1) == 100_000
    assert max_unlock_amount(10**30, 0.1) == 10**29
    assert max_unlock_amount(999, 0.333) == 332
    assert max_unlock_amount(0, 0.5) == 0


def test_missing_unlock_amount_defaults_to_cap() -> None:
    engine = PolicyEngine(FakeOracle())
    decision = engine.apply_constraints(
        _proposal(ActionKind.MODIFY_AMOUNT, lock_id=0),
        make_state(total_locked=5_000),
        [make_lock(0, 5_000)],
    )
    assert decision.action == ActionKind.MODIFY_AMOUNT
    assert decision.amount == 500


def test_emergency_downgraded_below_threshold() -> None:
    engine = PolicyEngine(FakeOracle())
    decision = engine.apply_constraints(
        _proposal(ActionKind.EMERGENCY_UNLOCK, lock_id=0),
        make_state(health_status=HealthStatus.WARNING, total_locked=1_000_000),
        [make_lock(0, 1_000_000)],
    )
    assert decision.action == ActionKind.UNLOCK
    assert decision.amount == 100_000
    assert any("Emergency downgraded" in c for c in decision.constraints)


def test_emergency_passes_at_emergency_health() -> None:
    engine = PolicyEngine(FakeOracle())
    decision = engine.apply_constraints(
        _proposal(ActionKind.EMERGENCY_UNLOCK, lock_id=0, risk_level=RiskLevel.CRITICAL),
        make_state(health_status=HealthStatus.EMERGENCY),
        [make_lock(0, 1_000_000)],
    )
    assert decision.action == ActionKind.EMERGENCY_UNLOCK
    assert decision.lock_id == 0
    assert decision.amount is None
    assert decision.risk_level == RiskLevel.CRITICAL


def test_unknown_lock_becomes_hold() -> None:
    engine = PolicyEngine(FakeOracle())
    decision = engine.apply_constraints(
        _proposal(ActionKind.UNLOCK, lock_id=7, amount=10),
        make_state(),
        [make_lock(0, 100)],
    )
    assert decision.is_hold
    assert decision.confidence == 1.0

    decision = engine.apply_constraints(
        _proposal(ActionKind.EXTEND_LOCK), make_state(), [make_lock(0, 100)]
    )
    assert decision.is_hold


def test_lock_duration_floor() -> None:
    engine = PolicyEngine(FakeOracle(), ConstraintConfig(min_lock_duration=7 * 86400))
    decision = engine.apply_constraints(
        _proposal(ActionKind.LOCK, amount=1_000, duration=3600), make_state(), []
    )
    assert decision.action == ActionKind.LOCK
    assert decision.duration == 7 * 86400
    assert decision.lock_id is None

    decision = engine.apply_constraints(
        _proposal(ActionKind.EXTEND_LOCK, lock_id=0, duration=90 * 86400),
        make_state(),
        [make_lock(0, 100)],
    )
    assert decision.duration == 90 * 86400


def test_hold_proposal_stays_hold() -> None:
    engine = PolicyEngine(FakeOracle())
    decision = engine.apply_constraints(
        _proposal(ActionKind.HOLD, confidence=0.9), make_state(), []
    )
    assert decision.is_hold
    assert decision.confidence == 0.9


# ============================================================
# decide()
# ============================================================

def test_cooldown_skips_oracle() -> None:
    oracle = FakeOracle(_proposal(ActionKind.UNLOCK, lock_id=0, amount=1))
    clock = _Clock()
    engine = PolicyEngine(oracle, ConstraintConfig(cooldown_seconds=300), clock=clock)
    state = make_state()
    locks = [make_lock(0, 1_000_000)]

    async def _run():
        first = await engine.decide(state, locks)
        clock.now += 120
        second = await engine.decide(state, locks)
        return first, second

    first, second = asyncio.run(_run())

    assert first.action == ActionKind.UNLOCK
    assert second.is_hold
    assert second.confidence == 1.0
    assert "cooldown" in second.rationale
    assert oracle.calls == 1
    assert engine.last_decision is second


def test_cooldown_expires() -> None:
    oracle = FakeOracle(_proposal(ActionKind.UNLOCK, lock_id=0, amount=1))
    clock = _Clock()
    engine = PolicyEngine(oracle, ConstraintConfig(cooldown_seconds=300), clock=clock)

    async def _run():
        await engine.decide(make_state(), [make_lock(0, 100)])
        clock.now += 301
        return await engine.decide(make_state(), [make_lock(0, 100)])

    assert asyncio.run(_run()).action == ActionKind.UNLOCK
    assert oracle.calls == 2


def test_hold_does_not_start_cooldown() -> None:
    oracle = FakeOracle(_proposal(ActionKind.HOLD))
    engine = PolicyEngine(oracle, clock=_Clock())

    async def _run():
        await engine.decide(make_state(), [])
        await engine.decide(make_state(), [])

    asyncio.run(_run())
    assert oracle.calls == 2
    assert engine.last_action_time is None


def test_gas_gate_skips_oracle() -> None:
    oracle = FakeOracle(_proposal(ActionKind.LOCK, amount=1))
    engine = PolicyEngine(oracle, ConstraintConfig(max_gas_price_gwei=50))

    decision = asyncio.run(engine.decide(make_state(gas_price_gwei=80.0), []))

    assert decision.is_hold
    assert "gas price" in decision.rationale
    assert oracle.calls == 0


def test_invalid_oracle_json_falls_back_to_hold() -> None:
    oracle = LLMPolicyOracle(client=FakeOpenAIClient("{not valid json"))
    engine = PolicyEngine(oracle)

    decision = asyncio.run(engine.decide(make_state(), [make_lock(0, 100)]))

    assert decision.is_hold
    assert decision.confidence == 1.0
    assert decision.rationale
    assert engine.last_action_time is None


@pytest.mark.parametrize(
    "oracle",
    [
        FakeOracle(error=OracleError("503 upstream")),
        FakeOracle(error=ConnectionError("reset")),
        FakeOracle(_proposal(ActionKind.HOLD), delay=1.0),
    ],
)
def test_oracle_failures_fall_back_to_hold(oracle: FakeOracle) -> None:
    engine = PolicyEngine(oracle, oracle_timeout=0.05)
    decision = asyncio.run(engine.decide(make_state(), []))
    assert decision.is_hold
    assert decision.confidence == 1.0
    assert decision.rationale.startswith("HOLD:")


def test_prompt_lists_state_and_constraints() -> None:
    engine = PolicyEngine(FakeOracle(), ConstraintConfig(max_unlock_ratio=0.25))
    prompt = engine.build_prompt(
        make_state(health_status=HealthStatus.CRITICAL), [make_lock(4, 12345)]
    )
    assert "Health Status: CRITICAL" in prompt
    assert "Lock #4: 12345 wei" in prompt
    assert "Max Unlock Ratio: 25%" in prompt


def test_update_constraints() -> None:
    engine = PolicyEngine(FakeOracle())
    updated = engine.update_constraints(max_unlock_ratio=0.2, cooldown_seconds=0)
    assert engine.constraints is updated
    assert updated.max_unlock_ratio == 0.2
    assert updated.min_lock_duration == ConstraintConfig().min_lock_duration

    with pytest.raises(ConstitutionViolation):
        engine.update_constraints(max_unlock_ratio=2.0)
    assert engine.constraints.max_unlock_ratio == 0.2
