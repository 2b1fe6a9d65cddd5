"""
Data model shared by the observer, policy engine, execution engine and orchestrator.

Snapshots are frozen: a FusedState is created once per cycle and only ever
superseded, never mutated.
"""

from dataclasses import dataclass, field, asdict, replace
from typing import Optional

from .constitution import (
    ActionKind, HealthStatus, LockType, RiskLevel, enforce,
    DEFAULT_MAX_UNLOCK_RATIO, DEFAULT_MIN_LOCK_DURATION, DEFAULT_MAX_GAS_PRICE_GWEI,
    DEFAULT_EMERGENCY_THRESHOLD, DEFAULT_COOLDOWN_SECONDS,
)


# ============================================================
# OBSERVATION
# ============================================================

@dataclass(frozen=True)
class MarketSnapshot:
    """Pair statistics captured once per cycle."""
    price: float = 0.0
    price_change_24h: float = 0.0     # percent, e.g. -22.0
    volume_24h: float = 0.0
    liquidity: float = 0.0
    market_cap: float = 0.0
    tx_count_24h: int = 0
    buy_pressure: float = 0.5         # buys / (buys + sells)
    sell_pressure: float = 0.5


@dataclass(frozen=True)
class ModularSignals:
    """Aggregates over the locker's lock records."""
    total_locked: int = 0             # smallest unit (wei)
    active_locks: int = 0
    avg_lock_duration: float = 0.0    # seconds since lock, averaged
    flexible_ratio: float = 0.0
    time_locked_ratio: float = 0.0
    conditional_ratio: float = 0.0
    permanent_ratio: float = 0.0
    recent_unlocks: int = 0           # unlocked within the last 24h
    pending_unlocks: int = 0          # time-locks expiring within 7 days


@dataclass(frozen=True)
class HealthMetrics:
    tvl: float = 0.0                  # quote currency
    volatility: float = 0.0
    liquidity_ratio: float = 0.0      # volume_24h / liquidity
    concentration_risk: float = 0.0   # [0, 1]
    smart_money_flow: float = 0.0     # [-1, 1]
    whale_activity: float = 0.0       # [0, 1]
    gas_price_gwei: float = 0.0
    network_congestion: float = 0.0   # [0, 1]


@dataclass(frozen=True)
class FusedState:
    market: MarketSnapshot
    modular: ModularSignals
    health: HealthMetrics
    health_status: HealthStatus
    timestamp: int                    # unix ms
    state_hash: str                   # 0x-prefixed keccak256

    def to_dict(self) -> dict:
        data = asdict(self)
        data["health_status"] = self.health_status.name
        # total_locked can exceed 2**53; keep it exact for JSON consumers
        data["modular"]["total_locked"] = str(self.modular.total_locked)
        return data


@dataclass(frozen=True)
class LockRecord:
    """One lockRecords(i) entry. Owned by the contract; read-only here."""
    lock_id: int
    amount: int
    lock_type: LockType
    lock_time: int
    unlock_time: int
    owner: str
    is_locked: bool
    lp_token: str = ""
    condition_hash: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.lock_id,
            "amount": str(self.amount),
            "type": self.lock_type.name,
            "lock_time": self.lock_time,
            "unlock_time": self.unlock_time,
            "owner": self.owner,
            "is_locked": self.is_locked,
        }


# ============================================================
# DECISION
# ============================================================

@dataclass(frozen=True)
class ConstraintConfig:
    """Hard limits applied to every oracle proposal."""
    max_unlock_ratio: float = DEFAULT_MAX_UNLOCK_RATIO
    min_lock_duration: int = DEFAULT_MIN_LOCK_DURATION
    max_gas_price_gwei: float = DEFAULT_MAX_GAS_PRICE_GWEI
    emergency_threshold: HealthStatus = DEFAULT_EMERGENCY_THRESHOLD
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS

    def __post_init__(self):
        enforce(0.0 <= self.max_unlock_ratio <= 1.0, "MAX_UNLOCK_RATIO",
                f"{self.max_unlock_ratio} not in [0, 1]")
        enforce(self.min_lock_duration >= 0, "MIN_LOCK_DURATION",
                f"{self.min_lock_duration} is negative")
        enforce(self.max_gas_price_gwei > 0, "MAX_GAS_PRICE",
                f"{self.max_gas_price_gwei} must be positive")
        enforce(self.cooldown_seconds >= 0, "COOLDOWN", f"{self.cooldown_seconds} is negative")
        enforce(isinstance(self.emergency_threshold, HealthStatus), "EMERGENCY_THRESHOLD",
                f"{self.emergency_threshold!r} is not a HealthStatus")

    def updated(self, **changes) -> "ConstraintConfig":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["emergency_threshold"] = self.emergency_threshold.name
        return data


@dataclass(frozen=True)
class Decision:
    action: ActionKind
    confidence: float
    rationale: str
    lock_id: Optional[int] = None
    amount: Optional[int] = None
    duration: Optional[int] = None
    constraints: tuple = ()
    risk_level: RiskLevel = RiskLevel.MEDIUM

    @property
    def is_hold(self) -> bool:
        return self.action == ActionKind.HOLD

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "lock_id": self.lock_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "duration": self.duration,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "constraints": list(self.constraints),
            "risk_level": self.risk_level.value,
        }


def hold_decision(reason: str, constraint: str = "Automatic HOLD decision") -> Decision:
    """A local HOLD: full confidence, never executed."""
    return Decision(
        action=ActionKind.HOLD,
        confidence=1.0,
        rationale=f"HOLD: {reason}",
        constraints=(constraint,),
        risk_level=RiskLevel.LOW,
    )


# ============================================================
# EXECUTION
# ============================================================

@dataclass
class ExecutionResult:
    """Result of executing a decision or publishing state on-chain."""
    success: bool
    tx_hash: str = ""
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: str = ""
    state_proof: str = ""             # FusedState.state_hash it ran against
    extra_tx_hashes: list[str] = field(default_factory=list)   # e.g. approval

    def to_dict(self) -> dict:
        return asdict(self)
