from __future__ import annotations

import asyncio
import json
from dataclasses import replace

import httpx
import pytest
from openai import APIStatusError

from locker.constitution import ActionKind, HealthStatus, LockType, RiskLevel
from locker.models import ConstraintConfig, ModularSignals
from locker.oracle import (
    LLMPolicyOracle,
    OracleError,
    OracleRequest,
    ProposalValidationError,
    ProposedAction,
    RuleBasedOracle,
    SYSTEM_PROMPT,
    parse_proposal,
)

from fakes import FakeOpenAIClient, make_lock, make_state


def test_parse_valid_proposal() -> None:
    text = json.dumps({
        "action": "unlock",
        "lockId": 3,
        "amount": "500000000000000000000",
        "duration": None,
        "confidence": 0.8,
        "reasoning": "  Sell pressure building  ",
        "riskLevel": "high",
    })
    proposal = parse_proposal(text)

    assert proposal.action == ActionKind.UNLOCK
    assert proposal.lock_id == 3
    assert proposal.amount == 500 * 10**18
    assert proposal.duration is None
    assert proposal.risk_level == RiskLevel.HIGH
    assert proposal.reasoning == "Sell pressure building"


def test_parse_defaults_and_fences() -> None:
    text = '```json\n{"action": "HOLD", "confidence": 0.9, "reasoning": "quiet market"}\n```'
    proposal = parse_proposal(text)
    assert proposal.action == ActionKind.HOLD
    assert proposal.lock_id is None
    assert proposal.risk_level == RiskLevel.MEDIUM


@pytest.mark.parametrize(
    "text",
    [
        "not json{",
        "[]",
        "",
        json.dumps({"action": "SELL_EVERYTHING", "confidence": 0.5, "reasoning": "x"}),
        json.dumps({"action": "UNLOCK", "confidence": 1.5, "reasoning": "x"}),
        json.dumps({"action": "UNLOCK", "confidence": 0.5}),
        json.dumps({"action": "UNLOCK", "confidence": 0.5, "reasoning": "   "}),
        json.dumps({"action": "UNLOCK", "lockId": -1, "confidence": 0.5, "reasoning": "x"}),
        json.dumps({"action": "UNLOCK", "amount": "lots", "confidence": 0.5, "reasoning": "x"}),
    ],
)
def test_parse_rejects_invalid(text: str) -> None:
    with pytest.raises(ProposalValidationError):
        parse_proposal(text)


def test_llm_oracle_sends_json_contract() -> None:
    client = FakeOpenAIClient(
        json.dumps({"action": "EXTEND_LOCK", "lockId": 1, "duration": 86400 * 60,
                    "confidence": 0.7, "reasoning": "extend"})
    )
    oracle = LLMPolicyOracle(model="test-model", client=client)
    request = OracleRequest(state=make_state(), prompt="## Current Market State")

    proposal = asyncio.run(oracle.propose(request))

    assert proposal.action == ActionKind.EXTEND_LOCK
    assert proposal.duration == 86400 * 60
    call = client.chat.completions.calls[0]
    assert call["model"] == "test-model"
    assert call["response_format"] == {"type": "json_object"}
    assert call["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert call["messages"][1]["content"] == "## Current Market State"
    assert oracle.call_count == 1


def test_llm_oracle_invalid_json_raises_validation_error() -> None:
    oracle = LLMPolicyOracle(client=FakeOpenAIClient("I think you should unlock"))
    with pytest.raises(ProposalValidationError):
        asyncio.run(oracle.propose(OracleRequest(state=make_state())))



def _status_error(status: int) -> APIStatusError:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return APIStatusError(f"upstream {status}", response=response, body=None)


def test_llm_oracle_retries_transient_errors() -> None:
    client = FakeOpenAIClient(
        json.dumps({"action": "HOLD", "confidence": 0.9, "reasoning": "calm"}),
        errors=[_status_error(503)],
    )
    oracle = LLMPolicyOracle(client=client)
    oracle.RETRY_BASE_DELAY = 0

    proposal = asyncio.run(oracle.propose(OracleRequest(state=make_state())))

    assert proposal.action == ActionKind.HOLD
    assert len(client.chat.completions.calls) == 2


def test_llm_oracle_gives_up_after_max_retries() -> None:
    client = FakeOpenAIClient("{}", errors=[_status_error(502)] * 3)
    oracle = LLMPolicyOracle(client=client)
    oracle.RETRY_BASE_DELAY = 0

    with pytest.raises(OracleError):
        asyncio.run(oracle.propose(OracleRequest(state=make_state())))
    assert len(client.chat.completions.calls) == LLMPolicyOracle.MAX_RETRIES + 1


def test_llm_oracle_does_not_retry_client_errors() -> None:
    client = FakeOpenAIClient("{}", errors=[_status_error(400)])
    oracle = LLMPolicyOracle(client=client)
    oracle.RETRY_BASE_DELAY = 0

    with pytest.raises(OracleError):
        asyncio.run(oracle.propose(OracleRequest(state=make_state())))
    assert len(client.chat.completions.calls) == 1

def test_rule_oracle_emergency_unlocks_largest_lock() -> None:
    request = OracleRequest(
        state=make_state(health_status=HealthStatus.CRITICAL),
        active_locks=[make_lock(0, 100), make_lock(1, 900), make_lock(2, 500)],
        constraints=ConstraintConfig(),
    )
    proposal = asyncio.run(RuleBasedOracle().propose(request))

    assert proposal.action == ActionKind.EMERGENCY_UNLOCK
    assert proposal.lock_id == 1
    assert proposal.risk_level == RiskLevel.CRITICAL


def test_rule_oracle_extends_soonest_time_lock_on_warning() -> None:
    state = make_state(health_status=HealthStatus.WARNING)
    state = replace(state, modular=ModularSignals(total_locked=1500, active_locks=3, pending_unlocks=1))
    locks = [
        make_lock(0, 500, unlock_time=2_000_000_000),
        make_lock(1, 500, unlock_time=1_700_100_000),
        make_lock(2, 500, LockType.FLEXIBLE, unlock_time=1_600_000_000),
    ]
    proposal = asyncio.run(
        RuleBasedOracle(extension_seconds=86400 * 10).propose(
            OracleRequest(state=state, active_locks=locks)
        )
    )

    assert proposal.action == ActionKind.EXTEND_LOCK
    assert proposal.lock_id == 1
    assert proposal.duration == 86400 * 10


def test_rule_oracle_holds_when_healthy() -> None:
    request = OracleRequest(state=make_state(), active_locks=[make_lock(0, 100)])
    proposal = asyncio.run(RuleBasedOracle().propose(request))
    assert isinstance(proposal, ProposedAction)
    assert proposal.action == ActionKind.HOLD
