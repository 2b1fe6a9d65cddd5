"""
Policy Oracles - where proposals come from.

Two interchangeable oracles behind one method, propose(request) -> ProposedAction:
  LLMPolicyOracle  - OpenAI-compatible chat completion, strict JSON contract
  RuleBasedOracle  - deterministic rules over the same request (ORACLE_MODE=rules)

An oracle only PROPOSES. The policy engine clamps every proposal against the
constraint set before anything is executed, so nothing here is trusted.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from openai import AsyncOpenAI
from openai import APIStatusError as OpenAIAPIStatusError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .constitution import ActionKind, HealthStatus, LockType, RiskLevel, SAFETY_LAWS
from .models import ConstraintConfig, FusedState, LockRecord

logger = logging.getLogger("locker.oracle")


class OracleError(Exception):
    """The oracle could not produce an answer (transport, auth, exhausted retries)."""
    pass


class ProposalValidationError(OracleError):
    """The oracle answered, but not with a valid proposal."""
    pass


# ============================================================
# WIRE CONTRACT
# ============================================================

class ProposedAction(BaseModel):
    """
    The JSON object an oracle must answer with:

        {"action": "UNLOCK", "lockId": 3, "amount": "1000000000000000000",
         "duration": null, "confidence": 0.8, "reasoning": "...", "riskLevel": "HIGH"}
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: ActionKind
    lock_id: Optional[int] = Field(None, alias="lockId", ge=0)
    amount: Optional[int] = Field(None, ge=0)          # wei; JSON may carry it as a string
    duration: Optional[int] = Field(None, ge=0)        # seconds
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = Field(..., min_length=1)
    risk_level: RiskLevel = Field(RiskLevel.MEDIUM, alias="riskLevel")

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("risk_level", mode="before")
    @classmethod
    def _normalize_risk(cls, v):
        if v is None:
            return RiskLevel.MEDIUM
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("reasoning", mode="before")
    @classmethod
    def _strip_reasoning(cls, v):
        return v.strip() if isinstance(v, str) else v


def parse_proposal(text: str) -> ProposedAction:
    """Strict decode: JSON object -> ProposedAction, or ProposalValidationError."""
    raw = (text or "").strip()
    if raw.startswith("```"):
        # ```json ... ``` fences from models that ignore response_format
        raw = raw.strip("`")
        if raw.lower().startswith("json"):
            raw = raw[4:]
        raw = raw.strip()
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ProposalValidationError(f"Oracle response is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProposalValidationError(f"Oracle response is not a JSON object: {type(data).__name__}")
    try:
        return ProposedAction.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ProposalValidationError(f"Invalid proposal: {errors}") from e


@dataclass
class OracleRequest:
    """Everything an oracle may look at. `prompt` is the rendered text form."""
    state: FusedState
    active_locks: list[LockRecord] = field(default_factory=list)
    constraints: ConstraintConfig = field(default_factory=ConstraintConfig)
    prompt: str = ""


# ============================================================
# LLM ORACLE
# ============================================================

SYSTEM_PROMPT = """You are an AI agent managing LP (liquidity provider) token locks held in an on-chain locker contract. You decide when to lock, unlock or extend LP token locks based on market conditions and protocol health.

## Capabilities
1. LOCK - lock LP tokens held by the agent wallet
2. UNLOCK - release part of an existing lock
3. EXTEND_LOCK - extend an existing lock's duration
4. MODIFY_AMOUNT - adjust the amount of an existing lock
5. EMERGENCY_UNLOCK - force-release a lock in a critical situation
6. HOLD - do nothing this cycle

## Decision Framework
- Market: price trend, volume pattern, liquidity depth, buy/sell pressure
- Risk: volatility, concentration, smart money flow, protocol health status
- Constraints: max unlock ratio per action, minimum lock duration, gas price limit, cooldown between actions

## Output Format
Respond with a single JSON object and nothing else:
{
  "action": "LOCK|UNLOCK|EXTEND_LOCK|MODIFY_AMOUNT|EMERGENCY_UNLOCK|HOLD",
  "lockId": integer or null,
  "amount": string (in wei) or null,
  "duration": integer (seconds) or null,
  "confidence": number between 0 and 1,
  "reasoning": "detailed explanation",
  "riskLevel": "LOW|MEDIUM|HIGH|CRITICAL"
}

## Rules
1. Prefer HOLD when uncertain. Capital preservation comes first.
2. Never unlock more than the configured max ratio at once.
3. Weigh gas costs against the expected benefit.
4. Use EMERGENCY_UNLOCK only when health status is Critical or Emergency.
5. Actions on an existing lock must reference a lockId from the active locks list."""


class LLMPolicyOracle:
    """
    Usage:
        oracle = LLMPolicyOracle(api_key=key, model="gpt-4o-mini")
        proposal = await oracle.propose(request)

    `client` may be any object shaped like openai.AsyncOpenAI
    (client.chat.completions.create(...)); tests pass a fake.
    """

    MAX_RETRIES = 2
    RETRY_BASE_DELAY = 1.0

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
        timeout: float = 30.0,
        client=None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.call_count = 0

    async def _complete(self, messages: list[dict]) -> str:
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                )
                return response.choices[0].message.content or ""

            except OpenAIAPIStatusError as e:
                is_transient = e.status_code in (500, 502, 503, 529)
                if is_transient and attempt < self.MAX_RETRIES:
                    wait = self.RETRY_BASE_DELAY * 2 ** attempt  # 1s, 2s
                    logger.warning(
                        f"Oracle returned {e.status_code} "
                        f"(attempt {attempt + 1}/{self.MAX_RETRIES + 1}), retrying in {wait}s… "
                        f"request_id={getattr(e, 'request_id', '?')}"
                    )
                    await asyncio.sleep(wait)
                    continue
                raise OracleError(f"Oracle call failed [{e.status_code}]: {e.message}") from e

        raise OracleError("Oracle retries exhausted")

    async def propose(self, request: OracleRequest) -> ProposedAction:
        self.call_count += 1
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": request.prompt},
        ]
        text = await self._complete(messages)
        return parse_proposal(text)

    async def close(self):
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


# ============================================================
# RULE ORACLE
# ============================================================

class RuleBasedOracle:
    """
    Deterministic proposals, no network:
      - health >= emergency threshold -> EMERGENCY_UNLOCK the largest active lock
      - WARNING with pending unlocks  -> EXTEND_LOCK the soonest-expiring time lock
      - otherwise                     -> HOLD
    """

    def __init__(self, extension_seconds: int = SAFETY_LAWS.DEFAULT_LOCK_DURATION_SECONDS):
        self.extension_seconds = extension_seconds
        self.call_count = 0

    async def propose(self, request: OracleRequest) -> ProposedAction:
        self.call_count += 1
        state = request.state
        locks = request.active_locks

        if state.health_status >= request.constraints.emergency_threshold and locks:
            target = max(locks, key=lambda r: r.amount)
            return ProposedAction(
                action=ActionKind.EMERGENCY_UNLOCK,
                lock_id=target.lock_id,
                confidence=0.9,
                reasoning=(
                    f"Health is {state.health_status.name}; releasing largest lock "
                    f"#{target.lock_id} to limit exposure"
                ),
                risk_level=RiskLevel.CRITICAL,
            )

        if state.health_status == HealthStatus.WARNING and state.modular.pending_unlocks > 0:
            time_locks = [r for r in locks if r.lock_type == LockType.TIME_LOCKED]
            if time_locks:
                target = min(time_locks, key=lambda r: r.unlock_time)
                return ProposedAction(
                    action=ActionKind.EXTEND_LOCK,
                    lock_id=target.lock_id,
                    duration=self.extension_seconds,
                    confidence=0.7,
                    reasoning=(
                        f"Health is WARNING with {state.modular.pending_unlocks} pending unlock(s); "
                        f"extending soonest-expiring lock #{target.lock_id}"
                    ),
                    risk_level=RiskLevel.HIGH,
                )

        return ProposedAction(
            action=ActionKind.HOLD,
            confidence=0.8,
            reasoning=f"No rule triggered at health {state.health_status.name}",
            risk_level=RiskLevel.LOW,
        )

    async def close(self):
        pass
