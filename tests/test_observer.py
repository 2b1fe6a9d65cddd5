from __future__ import annotations

import asyncio

import pytest
from web3 import Web3

from locker.constitution import HealthStatus, LockType
from locker.models import HealthMetrics, MarketSnapshot
from locker.observer import (
    StateObserver,
    aggregate_locks,
    classify_health,
    compute_risk_score,
    compute_state_hash,
    rolling_volatility,
    to_fixed,
)

from fakes import NOW, FakeChain, FakeMarket, PairMarket, fixed_clock, make_lock


def _observer(market=None, chain=None, clock=None, **kwargs) -> StateObserver:
    return StateObserver(
        market or FakeMarket(),
        chain or FakeChain(),
        clock=clock or fixed_clock(),
        **kwargs,
    )


# ============================================================
# Risk score
# ============================================================

def test_price_drop_and_sell_pressure_is_warning() -> None:
    market = MarketSnapshot(price_change_24h=-22.0, buy_pressure=0.25, sell_pressure=0.75)
    health = HealthMetrics()

    assert compute_risk_score(market, health) == 5
    assert classify_health(market, health) == HealthStatus.WARNING


def test_added_volatility_is_critical() -> None:
    market = MarketSnapshot(price_change_24h=-22.0, buy_pressure=0.25, sell_pressure=0.75)
    health = HealthMetrics(volatility=0.55)

    assert compute_risk_score(market, health) == 8
    assert classify_health(market, health) == HealthStatus.CRITICAL


def test_only_highest_step_scores() -> None:
    assert compute_risk_score(MarketSnapshot(price_change_24h=-6), HealthMetrics()) == 1
    assert compute_risk_score(MarketSnapshot(price_change_24h=-10.5), HealthMetrics()) == 2
    assert compute_risk_score(MarketSnapshot(price_change_24h=-10.0), HealthMetrics()) == 1
    assert compute_risk_score(MarketSnapshot(), HealthMetrics(liquidity_ratio=1.5)) == 2
    assert compute_risk_score(MarketSnapshot(), HealthMetrics(concentration_risk=0.6)) == 1
    assert compute_risk_score(MarketSnapshot(), HealthMetrics(network_congestion=0.9)) == 1


def test_all_factors_reach_emergency() -> None:
    market = MarketSnapshot(price_change_24h=-30, buy_pressure=0.1, sell_pressure=0.9)
    health = HealthMetrics(
        volatility=0.8, liquidity_ratio=2.0, concentration_risk=0.9, network_congestion=1.0
    )
    assert compute_risk_score(market, health) == 13
    assert classify_health(market, health) == HealthStatus.EMERGENCY


def test_health_is_monotonic_in_volatility() -> None:
    for price_change in (0.0, -6.0, -12.0, -25.0):
        for sell in (0.5, 0.65, 0.75):
            market = MarketSnapshot(price_change_24h=price_change, buy_pressure=1 - sell, sell_pressure=sell)
            statuses = [
                classify_health(market, HealthMetrics(volatility=v)) for v in (0.1, 0.4, 0.6)
            ]
            assert statuses == sorted(statuses)


def test_volatility_steps_move_health_up() -> None:
    mild = MarketSnapshot(price_change_24h=-12.0)
    assert [classify_health(mild, HealthMetrics(volatility=v)) for v in (0.1, 0.4, 0.6)] == [
        HealthStatus.HEALTHY, HealthStatus.WARNING, HealthStatus.WARNING,
    ]

    stressed = MarketSnapshot(price_change_24h=-22.0, buy_pressure=0.25, sell_pressure=0.75)
    assert [classify_health(stressed, HealthMetrics(volatility=v)) for v in (0.1, 0.4, 0.6)] == [
        HealthStatus.WARNING, HealthStatus.CRITICAL, HealthStatus.CRITICAL,
    ]


# ============================================================
# Pure helpers
# ============================================================

def test_to_fixed_truncates_without_float_drift() -> None:
    assert to_fixed(0.1, 8) == 10_000_000
    assert to_fixed(1.23456789123, 8) == 123_456_789
    assert to_fixed(0.29, 4) == 2900
    assert to_fixed(0.0, 8) == 0


def test_state_hash_matches_packed_keccak() -> None:
    market = MarketSnapshot(price=1.5)
    health = HealthMetrics(tvl=2500.25, volatility=0.1234)
    expected = Web3.to_hex(
        Web3.solidity_keccak(
            ["uint256"] * 5,
            [150_000_000, 250_025_000_000, 1234, 3, 1_700_000_000_000],
        )
    )
    assert compute_state_hash(market, health, 3, 1_700_000_000_000) == expected
    assert expected.startswith("0x") and len(expected) == 66


def test_rolling_volatility() -> None:
    assert rolling_volatility([]) == 0.0
    assert rolling_volatility([1.0, 1.1]) == 0.0  # one return
    assert rolling_volatility([1.0, 1.0, 1.0, 1.0]) == 0.0
    assert rolling_volatility([1.0, 1.1, 0.99]) > 0.0


def test_aggregate_locks() -> None:
    now = NOW
    records = [
        make_lock(0, 600, LockType.TIME_LOCKED, lock_time=int(now) - 100, unlock_time=int(now) + 3 * 86400),
        make_lock(1, 400, LockType.FLEXIBLE, lock_time=int(now) - 300, unlock_time=0),
        make_lock(2, 999, is_locked=False, unlock_time=int(now) - 1000),
        make_lock(3, 999, is_locked=False, unlock_time=int(now) - 2 * 86400),
    ]
    signals, active = aggregate_locks(records, now)

    assert [r.lock_id for r in active] == [0, 1]
    assert signals.total_locked == 1000
    assert signals.active_locks == 2
    assert signals.avg_lock_duration == 200
    assert signals.flexible_ratio == 0.5
    assert signals.time_locked_ratio == 0.5
    assert signals.conditional_ratio == 0.0
    assert signals.recent_unlocks == 1
    assert signals.pending_unlocks == 1


# ============================================================
# fuse()
# ============================================================

def test_fuse_derives_health_metrics() -> None:
    chain = FakeChain(
        records=[
            make_lock(0, 600),
            make_lock(1, 400, LockType.PERMANENT),
        ],
        bad_ids=(2,),
    )
    chain.locker_balance = 2 * 10**18
    chain.gas_price_wei = 45 * 10**9
    market = FakeMarket(
        MarketSnapshot(
            price=1.5, volume_24h=50_000.0, liquidity=100_000.0, tx_count_24h=100,
            buy_pressure=0.7, sell_pressure=0.3,
        )
    )

    async def _run():
        observer = _observer(market, chain)
        state = await observer.fuse()
        return observer, state

    observer, state = asyncio.run(_run())

    assert state.health.tvl == 3.0
    assert state.health.liquidity_ratio == 0.5
    assert state.health.gas_price_gwei == 45.0
    assert state.health.network_congestion == 0.5
    assert state.health.concentration_risk == 0.6
    assert abs(state.health.smart_money_flow - 0.4) < 1e-9
    assert state.health.whale_activity == 0.5
    assert state.modular.total_locked == 1000
    assert [r.lock_id for r in observer.active_locks] == [0, 1]
    assert state.timestamp == int(NOW * 1000)
    assert state.health_status == HealthStatus.HEALTHY


def test_fuse_is_idempotent_apart_from_time() -> None:
    chain = FakeChain(records=[make_lock(0, 500)])
    chain.locker_balance = 10**18
    times = [NOW, NOW, NOW + 60, NOW + 60]

    def clock():
        return times.pop(0) if len(times) > 1 else times[0]

    async def _run():
        observer = _observer(FakeMarket(), chain, clock=clock)
        return await observer.fuse(), await observer.fuse()

    first, second = asyncio.run(_run())

    assert first.market == second.market
    assert first.modular.total_locked == second.modular.total_locked
    assert first.modular.active_locks == second.modular.active_locks
    assert first.health == second.health
    assert first.health_status == second.health_status
    assert first.timestamp != second.timestamp
    assert first.state_hash != second.state_hash


def test_failed_fetches_fall_back_to_defaults() -> None:
    chain = FakeChain(records=[make_lock(0, 500)])
    chain.fail_reads = True
    market = FakeMarket(error=RuntimeError("dexscreener down"))

    async def _run():
        observer = _observer(market, chain)
        return observer, await observer.fuse()

    observer, state = asyncio.run(_run())

    assert state.market == MarketSnapshot()
    assert state.market.buy_pressure == 0.5 and state.market.sell_pressure == 0.5
    assert state.modular.total_locked == 0
    assert state.health.gas_price_gwei == 0.0
    assert observer.active_locks == []
    assert len(observer.price_history) == 0
    assert state.health_status == HealthStatus.HEALTHY


def test_slow_fetch_times_out_to_defaults() -> None:
    market = FakeMarket(delay=1.0)

    async def _run():
        observer = _observer(market, fetch_timeout=0.01)
        return await observer.fuse()

    state = asyncio.run(_run())
    assert state.market.price == 0.0


def test_price_history_is_bounded() -> None:
    market = FakeMarket()

    async def _run():
        observer = _observer(market)
        for i in range(105):
            market.snapshot = MarketSnapshot(price=1.0 + i / 100, volume_24h=float(i))
            await observer.fuse()
        return observer

    observer = asyncio.run(_run())
    assert len(observer.price_history) == 100
    assert observer.price_history[0] == pytest.approx(1.05)
    assert observer.volume_history[-1] == 104.0


def test_priceless_pair_leaves_history_untouched() -> None:
    def pair(price):
        return {"priceUsd": price, "volume": {"h24": 1_000}, "liquidity": {"usd": 100_000}}

    market = PairMarket([pair("1.0"), pair("1.0"), pair("1.0"), pair(None), pair("1.0")])

    async def _run():
        observer = _observer(market)
        return observer, [await observer.fuse() for _ in range(5)]

    observer, states = asyncio.run(_run())

    assert list(observer.price_history) == [1.0, 1.0, 1.0, 1.0]
    assert states[3].market == MarketSnapshot()
    assert all(state.health.volatility == 0.0 for state in states)
    assert states[-1].health_status == HealthStatus.HEALTHY


def test_non_positive_price_snapshot_is_not_recorded() -> None:
    market = FakeMarket(MarketSnapshot(price=0.0, volume_24h=5.0))

    async def _run():
        observer = _observer(market)
        await observer.fuse()
        return observer

    observer = asyncio.run(_run())
    assert len(observer.price_history) == 0
    assert len(observer.volume_history) == 0
