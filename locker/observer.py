"""
State Observer - market, protocol and chain signals fused into one snapshot.

Three fetches per cycle, concurrently, each bounded by its own timeout:
  market   -> DexScreener pair stats (+ rolling price/volume history)
  modular  -> every lock record in the locker (+ active-lock catalog)
  chain    -> gas price, LP balance held by the locker, last published state

A failing fetch degrades to its neutral default with a warning. fuse() itself
never fails a cycle.

Health classification is an additive score over RISK_POLICY (constitution).
"""

import asyncio
import logging
import statistics
import time
from collections import deque
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from web3 import Web3

from .constitution import HealthStatus, LockType, RISK_POLICY, SAFETY_LAWS
from .models import FusedState, HealthMetrics, LockRecord, MarketSnapshot, ModularSignals

logger = logging.getLogger("locker.observer")


# ============================================================
# PURE HELPERS
# ============================================================

def to_fixed(value: float, decimals: int) -> int:
    """value * 10**decimals as an integer, truncated, via Decimal (no float drift)."""
    scaled = (Decimal(str(value)) * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    return max(int(scaled), 0)


def _score_above(value: float, steps) -> int:
    for threshold, points in steps:
        if value > threshold:
            return points
    return 0


def _score_below(value: float, steps) -> int:
    for threshold, points in steps:
        if value < threshold:
            return points
    return 0


def compute_risk_score(market: MarketSnapshot, health: HealthMetrics) -> int:
    """Additive risk score. Each factor contributes its highest matching step only."""
    score = 0
    score += _score_below(market.price_change_24h, RISK_POLICY.PRICE_DROP_STEPS)
    score += _score_above(health.volatility, RISK_POLICY.VOLATILITY_STEPS)
    score += _score_above(health.liquidity_ratio, RISK_POLICY.LIQUIDITY_RATIO_STEPS)
    score += _score_above(health.concentration_risk, RISK_POLICY.CONCENTRATION_STEPS)
    score += _score_above(health.network_congestion, RISK_POLICY.CONGESTION_STEPS)
    score += _score_above(market.sell_pressure, RISK_POLICY.SELL_PRESSURE_STEPS)
    return score


def classify_health(market: MarketSnapshot, health: HealthMetrics) -> HealthStatus:
    score = compute_risk_score(market, health)
    if score >= RISK_POLICY.EMERGENCY_SCORE:
        return HealthStatus.EMERGENCY
    if score >= RISK_POLICY.CRITICAL_SCORE:
        return HealthStatus.CRITICAL
    if score >= RISK_POLICY.WARNING_SCORE:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def compute_state_hash(
    market: MarketSnapshot, health: HealthMetrics, active_locks: int, timestamp_ms: int
) -> str:
    """keccak256(abi.encodePacked(uint256 price, tvl, volatility, activeLocks, timestamp))"""
    values = [
        to_fixed(market.price, SAFETY_LAWS.PRICE_SCALE_DECIMALS),
        to_fixed(health.tvl, SAFETY_LAWS.TVL_SCALE_DECIMALS),
        to_fixed(health.volatility, SAFETY_LAWS.VOLATILITY_SCALE_DECIMALS),
        int(active_locks),
        int(timestamp_ms),
    ]
    return Web3.to_hex(Web3.solidity_keccak(["uint256"] * 5, values))


def rolling_volatility(prices) -> float:
    """Sample stdev of period-over-period returns; 0 with fewer than two returns."""
    prices = list(prices)
    returns = [
        (cur - prev) / prev
        for prev, cur in zip(prices, prices[1:])
        if prev > 0
    ]
    if len(returns) < 2:
        return 0.0
    return statistics.stdev(returns)


def aggregate_locks(records: list[LockRecord], now: float) -> tuple[ModularSignals, list[LockRecord]]:
    """Roll lock records up into ModularSignals. Returns (signals, active records)."""
    active = [r for r in records if r.is_locked]
    recent_cutoff = now - SAFETY_LAWS.RECENT_UNLOCK_WINDOW_SECONDS
    pending_cutoff = now + SAFETY_LAWS.PENDING_UNLOCK_WINDOW_SECONDS

    recent_unlocks = sum(1 for r in records if not r.is_locked and r.unlock_time > recent_cutoff)
    pending_unlocks = sum(
        1 for r in active
        if r.lock_type == LockType.TIME_LOCKED and r.unlock_time <= pending_cutoff
    )

    count = len(active)
    if count == 0:
        return ModularSignals(recent_unlocks=recent_unlocks), []

    by_type = {t: 0 for t in LockType}
    for r in active:
        by_type[r.lock_type] += 1

    signals = ModularSignals(
        total_locked=sum(r.amount for r in active),
        active_locks=count,
        avg_lock_duration=sum(now - r.lock_time for r in active) / count,
        flexible_ratio=by_type[LockType.FLEXIBLE] / count,
        time_locked_ratio=by_type[LockType.TIME_LOCKED] / count,
        conditional_ratio=by_type[LockType.CONDITIONAL] / count,
        permanent_ratio=by_type[LockType.PERMANENT] / count,
        recent_unlocks=recent_unlocks,
        pending_unlocks=pending_unlocks,
    )
    return signals, active


# ============================================================
# OBSERVER
# ============================================================

class StateObserver:
    """
    Usage:
        observer = StateObserver(market_client, chain_client)
        state = await observer.fuse()
        locks = observer.active_locks
    """

    def __init__(
        self,
        market,
        chain,
        lp_decimals: int = 18,
        reference_gas_gwei: float = 30.0,
        fetch_timeout: float = 15.0,
        clock=time.time,
    ):
        self._market = market
        self._chain = chain
        self._lp_decimals = lp_decimals
        self._reference_gas_gwei = reference_gas_gwei
        self._fetch_timeout = fetch_timeout
        self._clock = clock

        self.price_history: deque = deque(maxlen=SAFETY_LAWS.PRICE_HISTORY_SIZE)
        self.volume_history: deque = deque(maxlen=SAFETY_LAWS.PRICE_HISTORY_SIZE)
        self.active_locks: list[LockRecord] = []
        self.last_onchain_state: Optional[dict] = None
        self._fetch_failures: dict[str, int] = {"market": 0, "modular": 0, "chain": 0}

    async def _guarded(self, name: str, coro, default):
        try:
            return await asyncio.wait_for(coro, timeout=self._fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{name} fetch timed out after {self._fetch_timeout}s, using defaults")
        except Exception as e:
            logger.warning(f"{name} fetch failed, using defaults: {type(e).__name__}: {e}")
        self._fetch_failures[name] += 1
        return default

    # ============================================================
    # FETCHES
    # ============================================================

    async def _fetch_market(self) -> MarketSnapshot:
        snapshot = await self._market.fetch_snapshot()
        if snapshot.price > 0:
            self.price_history.append(snapshot.price)
            self.volume_history.append(snapshot.volume_24h)
        return snapshot

    async def _fetch_modular(self) -> tuple[ModularSignals, list[LockRecord]]:
        count = await self._chain.lock_count()
        results = await asyncio.gather(
            *(self._chain.read_lock(i) for i in range(count)),
            return_exceptions=True,
        )
        records = []
        for lock_id, result in enumerate(results):
            if isinstance(result, Exception):
                logger.debug(f"Skipping lock #{lock_id}: {result}")
                continue
            records.append(result)
        return aggregate_locks(records, self._clock())

    async def _fetch_chain_health(self) -> dict:
        fees = await self._chain.fee_data()
        balance = await self._chain.token_balance(self._chain.locker_address)
        onchain = await self._chain.latest_market_state()
        return {
            "gas_price_gwei": fees.gas_price_gwei,
            "locker_balance": balance,
            "onchain_state": onchain,
        }

    # ============================================================
    # FUSION
    # ============================================================

    def derive_health(
        self,
        market: MarketSnapshot,
        modular: ModularSignals,
        active: list[LockRecord],
        chain_health: dict,
    ) -> HealthMetrics:
        gas_gwei = float(chain_health.get("gas_price_gwei", 0.0))
        balance = int(chain_health.get("locker_balance", 0))

        tvl = float(Decimal(balance) / (Decimal(10) ** self._lp_decimals)) * market.price
        liquidity_ratio = market.volume_24h / market.liquidity if market.liquidity > 0 else 0.0

        reference = self._reference_gas_gwei * SAFETY_LAWS.CONGESTION_GAS_MULTIPLE
        congestion = min(gas_gwei / reference, 1.0) if reference > 0 else 0.0

        concentration = 0.0
        if modular.total_locked > 0 and active:
            concentration = max(r.amount for r in active) / modular.total_locked

        flow = max(-1.0, min(1.0, market.buy_pressure - market.sell_pressure))

        whale = 0.0
        whale_size = market.liquidity * SAFETY_LAWS.WHALE_TRADE_LIQUIDITY_SHARE
        if market.tx_count_24h > 0 and whale_size > 0:
            whale = min((market.volume_24h / market.tx_count_24h) / whale_size, 1.0)

        return HealthMetrics(
            tvl=tvl,
            volatility=rolling_volatility(self.price_history),
            liquidity_ratio=liquidity_ratio,
            concentration_risk=concentration,
            smart_money_flow=flow,
            whale_activity=whale,
            gas_price_gwei=gas_gwei,
            network_congestion=congestion,
        )

    async def fuse(self) -> FusedState:
        market, (modular, active), chain_health = await asyncio.gather(
            self._guarded("market", self._fetch_market(), MarketSnapshot()),
            self._guarded("modular", self._fetch_modular(), (ModularSignals(), [])),
            self._guarded("chain", self._fetch_chain_health(), {}),
        )
        self.active_locks = list(active)
        self.last_onchain_state = chain_health.get("onchain_state")

        health = self.derive_health(market, modular, active, chain_health)
        status = classify_health(market, health)
        timestamp_ms = int(self._clock() * 1000)

        state = FusedState(
            market=market,
            modular=modular,
            health=health,
            health_status=status,
            timestamp=timestamp_ms,
            state_hash=compute_state_hash(market, health, modular.active_locks, timestamp_ms),
        )
        logger.debug(
            f"Fused state: price={market.price:.6f} tvl={health.tvl:.2f} "
            f"vol={health.volatility:.4f} locks={modular.active_locks} "
            f"health={status.name} hash={state.state_hash[:18]}..."
        )
        return state

    def get_status(self) -> dict:
        return {
            "price_samples": len(self.price_history),
            "active_locks": len(self.active_locks),
            "fetch_failures": dict(self._fetch_failures),
            "last_onchain_state": self.last_onchain_state,
        }
