"""
Policy Decision Engine - state in, clamped Decision out.

decide() pipeline:
  1. cooldown gate   (HOLD, oracle not called)
  2. gas gate        (HOLD, oracle not called)
  3. oracle proposal (timeout / transport / invalid JSON -> HOLD)
  4. constraint clamp, deterministic and independent of what the oracle claims

decide() never raises. Any failure becomes a HOLD with a diagnostic rationale.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from .constitution import ActionKind, SAFETY_LAWS
from .models import ConstraintConfig, Decision, FusedState, LockRecord, hold_decision
from .oracle import OracleRequest, ProposalValidationError, ProposedAction

logger = logging.getLogger("locker.policy")


def max_unlock_amount(total_locked: int, max_unlock_ratio: float) -> int:
    """total_locked * ratio in integer basis points (floor)."""
    ratio_bps = int((Decimal(str(max_unlock_ratio)) * 10000).to_integral_value(rounding=ROUND_DOWN))
    return total_locked * ratio_bps // 10000


def _pct(ratio: float) -> str:
    return f"{ratio * 100:g}%"


class PolicyEngine:
    """
    Usage:
        engine = PolicyEngine(oracle, constraints)
        decision = await engine.decide(state, observer.active_locks)
    """

    def __init__(
        self,
        oracle,
        constraints: Optional[ConstraintConfig] = None,
        oracle_timeout: float = 30.0,
        clock=time.time,
    ):
        self._oracle = oracle
        self.constraints = constraints or ConstraintConfig()
        self._oracle_timeout = oracle_timeout
        self._clock = clock

        self.last_action_time: Optional[float] = None
        self.last_decision: Optional[Decision] = None
        self._decision_count = 0
        self._oracle_failures = 0

    # ============================================================
    # PROMPT
    # ============================================================

    def build_prompt(self, state: FusedState, active_locks: list[LockRecord]) -> str:
        m, mod, h = state.market, state.modular, state.health
        c = self.constraints
        ts = datetime.fromtimestamp(state.timestamp / 1000, tz=timezone.utc).isoformat()

        if active_locks:
            lock_lines = "\n".join(
                f"- Lock #{r.lock_id}: {r.amount} wei, Type: {r.lock_type.name}, "
                f"Unlock: {datetime.fromtimestamp(r.unlock_time, tz=timezone.utc).isoformat() if r.unlock_time else 'N/A'}"
                for r in active_locks
            )
        else:
            lock_lines = "No active locks"

        return f"""## Current Market State ({ts})

### Market Data
- Price: ${m.price:.6f}
- 24h Change: {m.price_change_24h:.2f}%
- 24h Volume: ${m.volume_24h:,.2f}
- Liquidity: ${m.liquidity:,.2f}
- Buy Pressure: {m.buy_pressure * 100:.1f}%
- Sell Pressure: {m.sell_pressure * 100:.1f}%

### Protocol Signals
- Total Locked: {mod.total_locked} wei
- Active Locks: {mod.active_locks}
- Avg Lock Duration: {mod.avg_lock_duration / 86400:.1f} days
- Flexible/TimeLocked/Conditional/Permanent Ratio: {mod.flexible_ratio * 100:.0f}%/{mod.time_locked_ratio * 100:.0f}%/{mod.conditional_ratio * 100:.0f}%/{mod.permanent_ratio * 100:.0f}%
- Recent Unlocks (24h): {mod.recent_unlocks}
- Pending Unlocks (7d): {mod.pending_unlocks}

### Health Metrics
- TVL: ${h.tvl:,.2f}
- Volatility: {h.volatility * 100:.2f}%
- Liquidity Ratio: {h.liquidity_ratio:.2f}
- Concentration Risk: {h.concentration_risk * 100:.1f}%
- Smart Money Flow: {h.smart_money_flow:.2f}
- Whale Activity: {h.whale_activity:.2f}
- Gas Price: {h.gas_price_gwei:.0f} Gwei
- Network Congestion: {h.network_congestion * 100:.0f}%
- **Health Status: {state.health_status.name}**

### Active Locks
{lock_lines}

### Constraints
- Max Unlock Ratio: {_pct(c.max_unlock_ratio)}
- Min Lock Duration: {c.min_lock_duration / 86400:g} days
- Max Gas Price: {c.max_gas_price_gwei:g} Gwei
- Emergency Threshold: {c.emergency_threshold.name}
- Cooldown: {c.cooldown_seconds}s

### Task
Analyze the current state and decide on the optimal action. Consider:
1. Is this a good time to lock more LP tokens?
2. Should any existing lock be extended or unlocked?
3. Is an emergency action needed given the health status?
4. What are the risks and potential rewards?

Respond with the JSON object described in your instructions."""

    # ============================================================
    # CLAMP
    # ============================================================

    def apply_constraints(
        self, proposal: ProposedAction, state: FusedState, active_locks: list[LockRecord]
    ) -> Decision:
        """Turn an oracle proposal into a Decision that satisfies every constraint."""
        c = self.constraints
        action = proposal.action
        labels: list[str] = []

        if action == ActionKind.HOLD:
            return Decision(
                action=ActionKind.HOLD,
                confidence=proposal.confidence,
                rationale=proposal.reasoning,
                constraints=("Oracle proposed HOLD",),
                risk_level=proposal.risk_level,
            )

        lock_id = None
        if action.targets_lock:
            known = {r.lock_id for r in active_locks}
            if proposal.lock_id is None or proposal.lock_id not in known:
                return hold_decision(
                    f"{action.value} targets lock {proposal.lock_id}, which is not an active lock",
                    "Target lock must be active",
                )
            lock_id = proposal.lock_id
            labels.append(f"Target lock #{lock_id} is active")

        if action == ActionKind.EMERGENCY_UNLOCK:
            if state.health_status < c.emergency_threshold:
                action = ActionKind.UNLOCK
                labels.append(
                    f"Emergency downgraded: health {state.health_status.name} "
                    f"below threshold {c.emergency_threshold.name}"
                )
            else:
                labels.append(f"Emergency unlock authorized: health {state.health_status.name}")

        amount = None
        duration = None

        if action in (ActionKind.UNLOCK, ActionKind.MODIFY_AMOUNT):
            cap = max_unlock_amount(state.modular.total_locked, c.max_unlock_ratio)
            amount = proposal.amount
            if amount is None:
                amount = cap
                labels.append(f"Unlock amount defaulted to {_pct(c.max_unlock_ratio)} of total locked")
            elif amount > cap:
                amount = cap
                labels.append(f"Unlock amount capped to {_pct(c.max_unlock_ratio)} of total locked")
            else:
                labels.append("Unlock ratio within limits")

        elif action == ActionKind.LOCK:
            amount = proposal.amount

        if action in (ActionKind.LOCK, ActionKind.EXTEND_LOCK):
            duration = proposal.duration
            effective = duration if duration is not None else SAFETY_LAWS.DEFAULT_LOCK_DURATION_SECONDS
            if effective < c.min_lock_duration:
                duration = c.min_lock_duration
                labels.append(f"Lock duration raised to minimum {c.min_lock_duration / 86400:g} days")
            else:
                labels.append("Lock duration meets minimum requirement")

        labels.append(
            f"Gas price {state.health.gas_price_gwei:.0f} Gwei within limit "
            f"({c.max_gas_price_gwei:g} Gwei)"
        )

        return Decision(
            action=action,
            confidence=proposal.confidence,
            rationale=proposal.reasoning,
            lock_id=lock_id,
            amount=amount,
            duration=duration,
            constraints=tuple(labels),
            risk_level=proposal.risk_level,
        )

    # ============================================================
    # DECIDE
    # ============================================================

    async def _consult_oracle(self, state: FusedState, active_locks: list[LockRecord]) -> Decision:
        request = OracleRequest(
            state=state,
            active_locks=list(active_locks),
            constraints=self.constraints,
            prompt=self.build_prompt(state, active_locks),
        )
        try:
            proposal = await asyncio.wait_for(
                self._oracle.propose(request), timeout=self._oracle_timeout
            )
        except asyncio.TimeoutError:
            self._oracle_failures += 1
            logger.warning(f"Oracle timed out after {self._oracle_timeout}s, holding")
            return hold_decision(f"oracle timed out after {self._oracle_timeout:g}s", "Oracle failure fallback")
        except ProposalValidationError as e:
            self._oracle_failures += 1
            logger.warning(f"Oracle response rejected: {e}")
            return hold_decision(f"invalid oracle response ({e})", "Oracle failure fallback")
        except Exception as e:
            self._oracle_failures += 1
            logger.warning(f"Oracle call failed: {type(e).__name__}: {e}")
            return hold_decision(f"oracle error ({type(e).__name__}: {e})", "Oracle failure fallback")

        return self.apply_constraints(proposal, state, active_locks)

    async def decide(self, state: FusedState, active_locks: list[LockRecord]) -> Decision:
        now = self._clock()
        c = self.constraints
        self._decision_count += 1

        if self.last_action_time is not None and now - self.last_action_time < c.cooldown_seconds:
            remaining = c.cooldown_seconds - (now - self.last_action_time)
            decision = hold_decision(
                f"cooldown active, {remaining:.0f}s remaining", "Cooldown period enforced"
            )
        elif state.health.gas_price_gwei > c.max_gas_price_gwei:
            decision = hold_decision(
                f"gas price {state.health.gas_price_gwei:.1f} Gwei exceeds limit "
                f"{c.max_gas_price_gwei:g} Gwei",
                "Gas price limit enforced",
            )
        else:
            decision = await self._consult_oracle(state, active_locks)
            if not decision.is_hold:
                self.last_action_time = now

        self.last_decision = decision
        logger.info(
            f"Decision: {decision.action.value} lock={decision.lock_id} "
            f"amount={decision.amount} confidence={decision.confidence:.2f} "
            f"risk={decision.risk_level.value} | {decision.rationale[:100]}"
        )
        return decision

    def update_constraints(self, **changes) -> ConstraintConfig:
        """Replace the constraint set. Invalid values raise ConstitutionViolation."""
        self.constraints = self.constraints.updated(**changes)
        logger.info(f"Constraints updated: {self.constraints.to_dict()}")
        return self.constraints

    def get_status(self) -> dict:
        return {
            "constraints": self.constraints.to_dict(),
            "last_action_time": self.last_action_time,
            "decisions": self._decision_count,
            "oracle_failures": self._oracle_failures,
            "last_decision": self.last_decision.to_dict() if self.last_decision else None,
        }
