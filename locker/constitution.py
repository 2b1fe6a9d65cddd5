"""
LOCKER CONSTITUTION - Layer 0 (Immutable)

Hardcoded policy constants shared by every layer of the agent.
Nothing here is read from the environment and nothing here changes at runtime:
the risk-score table, the execution safety laws and the on-chain type schema.

The risk thresholds are heuristic policy constants kept for behavioral parity
with the deployed locker, not a tuned risk model.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Final, Optional, Tuple


class ConstitutionViolation(Exception):
    """Raised when a safety law is violated."""
    pass


# ============================================================
# ENUMS (synced with the LP locker contract)
# ============================================================

class HealthStatus(IntEnum):
    """Ordered health classification. Values match the contract's uint8."""
    HEALTHY = 0
    WARNING = 1
    CRITICAL = 2
    EMERGENCY = 3


class LockType(IntEnum):
    FLEXIBLE = 0
    TIME_LOCKED = 1
    CONDITIONAL = 2
    PERMANENT = 3


class ActionKind(str, Enum):
    """Actions the policy engine can emit. HOLD never reaches the chain."""
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    EXTEND_LOCK = "EXTEND_LOCK"
    MODIFY_AMOUNT = "MODIFY_AMOUNT"
    EMERGENCY_UNLOCK = "EMERGENCY_UNLOCK"
    HOLD = "HOLD"

    @property
    def contract_code(self) -> Optional[int]:
        return ACTION_CONTRACT_CODES.get(self)

    @property
    def targets_lock(self) -> bool:
        return self not in (ActionKind.LOCK, ActionKind.HOLD)


ACTION_CONTRACT_CODES: Final[dict] = {
    ActionKind.LOCK: 0,
    ActionKind.UNLOCK: 1,
    ActionKind.EXTEND_LOCK: 2,
    ActionKind.MODIFY_AMOUNT: 3,
    ActionKind.EMERGENCY_UNLOCK: 4,
}


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def parse_health_status(name: str) -> HealthStatus:
    """'critical' / 'CRITICAL' / '2' → HealthStatus.CRITICAL."""
    raw = str(name).strip().upper()
    if raw.isdigit():
        return HealthStatus(int(raw))
    try:
        return HealthStatus[raw]
    except KeyError:
        raise ConstitutionViolation(
            f"Unknown health status: {name}. Supported: {[h.name for h in HealthStatus]}"
        )


# ============================================================
# RISK POLICY - additive health score
# ============================================================

@dataclass(frozen=True)
class RiskPolicy:
    """
    Additive risk score table. Each tuple is (threshold, points), ordered from
    the most severe threshold down; only the highest matching threshold scores.
    """

    PRICE_DROP_STEPS: Final[Tuple[Tuple[float, int], ...]] = ((-20.0, 3), (-10.0, 2), (-5.0, 1))
    VOLATILITY_STEPS: Final[Tuple[Tuple[float, int], ...]] = ((0.5, 3), (0.3, 2), (0.15, 1))
    LIQUIDITY_RATIO_STEPS: Final[Tuple[Tuple[float, int], ...]] = ((1.0, 2), (0.5, 1))
    CONCENTRATION_STEPS: Final[Tuple[Tuple[float, int], ...]] = ((0.7, 2), (0.5, 1))
    CONGESTION_STEPS: Final[Tuple[Tuple[float, int], ...]] = ((0.8, 1),)
    SELL_PRESSURE_STEPS: Final[Tuple[Tuple[float, int], ...]] = ((0.7, 2), (0.6, 1))

    EMERGENCY_SCORE: Final[int] = 10
    CRITICAL_SCORE: Final[int] = 7
    WARNING_SCORE: Final[int] = 4


RISK_POLICY = RiskPolicy()


# ============================================================
# SAFETY LAWS - execution and observation limits
# ============================================================

@dataclass(frozen=True)
class SafetyLaws:
    """Frozen dataclass = immutable at runtime."""

    # --- EXECUTION GATE ---
    MIN_EXECUTION_CONFIDENCE: Final[float] = 0.6       # below this, never execute

    # --- SIGNED ACTION EXPIRY ---
    ACTION_EXPIRY_SECONDS: Final[int] = 3600           # normal AI action: 1 hour
    EMERGENCY_EXPIRY_SECONDS: Final[int] = 300         # emergency unlock: 5 minutes

    # --- LOCK DEFAULTS ---
    DEFAULT_LOCK_DURATION_SECONDS: Final[int] = 30 * 86400   # when the decision has none

    # --- OBSERVATION ---
    PRICE_HISTORY_SIZE: Final[int] = 100               # rolling samples for volatility
    RECENT_UNLOCK_WINDOW_SECONDS: Final[int] = 86400   # "recent" = trailing 24h
    PENDING_UNLOCK_WINDOW_SECONDS: Final[int] = 7 * 86400
    CONGESTION_GAS_MULTIPLE: Final[float] = 3.0        # congestion = gas / (3 x reference)
    WHALE_TRADE_LIQUIDITY_SHARE: Final[float] = 0.01   # avg trade >= 1% of liquidity = max whale

    # --- FIXED POINT (chain boundary) ---
    PRICE_SCALE_DECIMALS: Final[int] = 8
    TVL_SCALE_DECIMALS: Final[int] = 8
    VOLATILITY_SCALE_DECIMALS: Final[int] = 4
    RATIO_SCALE_DECIMALS: Final[int] = 4               # price impact, basis points
    PUBLISH_BUCKET_SECONDS: Final[int] = 3600          # state signatures bind to the hour


SAFETY_LAWS = SafetyLaws()


# ============================================================
# DEFAULT CONSTRAINTS (overridable from config, validated here)
# ============================================================

DEFAULT_MAX_UNLOCK_RATIO: Final[float] = 0.1       # max 10% of total locked per action
DEFAULT_MIN_LOCK_DURATION: Final[int] = 86400      # 1 day
DEFAULT_MAX_GAS_PRICE_GWEI: Final[float] = 100.0
DEFAULT_EMERGENCY_THRESHOLD: Final[HealthStatus] = HealthStatus.CRITICAL
DEFAULT_COOLDOWN_SECONDS: Final[int] = 300


# ============================================================
# ON-CHAIN TYPE SCHEMA (EIP-712)
# ============================================================

EIP712_DOMAIN_NAME: Final[str] = "EIP8004LPLocker"
EIP712_DOMAIN_VERSION: Final[str] = "1"

AI_ACTION_TYPES: Final[dict] = {
    "AIAction": [
        {"name": "lockId", "type": "uint256"},
        {"name": "actionType", "type": "uint8"},
        {"name": "amount", "type": "uint256"},
        {"name": "stateHash", "type": "bytes32"},
        {"name": "expiry", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
    ],
}

MAX_UINT256: Final[int] = 2 ** 256 - 1
ZERO_HASH: Final[bytes] = b"\x00" * 32


def enforce(condition: bool, law_name: str, details: str = ""):
    """Enforce a safety law. If violated, raise ConstitutionViolation."""
    if not condition:
        raise ConstitutionViolation(f"CONSTITUTION VIOLATION [{law_name}]: {details}")
