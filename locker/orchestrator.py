"""
Cycle Orchestrator - the control loop.

Two independent timers on one event loop:
  primary      every cycle_interval s:   observe -> decide -> gate -> execute
  publication  every publish_interval s: republish the last fused state on-chain

One asyncio.Lock serializes everything that touches the chain. A primary tick
that finds work in flight is skipped (never queued); publication and manual
actions wait for the lock.

All mutable loop state (last state/decision/result, counters, phase) lives on
the orchestrator instance.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

from .constitution import ActionKind, HealthStatus, RiskLevel, SAFETY_LAWS
from .models import Decision, ExecutionResult, FusedState

logger = logging.getLogger("locker.orchestrator")


class CyclePhase(str, Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    DECIDING = "deciding"
    EXECUTING = "executing"
    SKIPPED = "skipped"
    PUBLISHING = "publishing"


@dataclass
class CycleStats:
    cycles: int = 0
    successful_actions: int = 0
    failed_actions: int = 0
    skipped_executions: int = 0
    skipped_ticks: int = 0
    cycle_errors: int = 0
    publications_ok: int = 0
    publications_failed: int = 0


class CycleOrchestrator:
    """
    Usage:
        orchestrator = CycleOrchestrator(observer, policy, executor)
        task = asyncio.create_task(orchestrator.run())
        ...
        orchestrator.stop()
        await task
    """

    def __init__(
        self,
        observer,
        policy,
        executor,
        cycle_interval: float = 300.0,
        publish_interval: float = 3600.0,
        emergency_only: bool = False,
        clock=time.time,
    ):
        self.observer = observer
        self.policy = policy
        self.executor = executor
        self.cycle_interval = cycle_interval
        self.publish_interval = publish_interval
        self.emergency_only = emergency_only
        self._clock = clock

        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._inflight: set[asyncio.Task] = set()
        self._running = False
        self._started_at: Optional[float] = None

        self.phase = CyclePhase.IDLE
        self.stats = CycleStats()
        self.last_state: Optional[FusedState] = None
        self.last_decision: Optional[Decision] = None
        self.last_result: Optional[ExecutionResult] = None
        self.last_publication: Optional[ExecutionResult] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ============================================================
    # EXECUTION GATE
    # ============================================================

    def should_execute(self, decision: Decision, state: FusedState) -> bool:
        if decision.is_hold:
            return False
        if decision.confidence < SAFETY_LAWS.MIN_EXECUTION_CONFIDENCE:
            logger.info(
                f"Confidence {decision.confidence:.2f} below "
                f"{SAFETY_LAWS.MIN_EXECUTION_CONFIDENCE}, not executing {decision.action.value}"
            )
            return False
        emergency = state.health_status == HealthStatus.EMERGENCY or self.emergency_only
        if emergency and decision.action != ActionKind.EMERGENCY_UNLOCK:
            logger.info(
                f"Emergency mode (health={state.health_status.name}, "
                f"emergency_only={self.emergency_only}): suppressing {decision.action.value}"
            )
            return False
        return True

    # ============================================================
    # CYCLES
    # ============================================================

    async def _cycle(self) -> Optional[ExecutionResult]:
        self.stats.cycles += 1
        cycle_no = self.stats.cycles
        started = time.monotonic()
        try:
            self.phase = CyclePhase.OBSERVING
            state = await self.observer.fuse()
            self.last_state = state

            self.phase = CyclePhase.DECIDING
            decision = await self.policy.decide(state, self.observer.active_locks)
            self.last_decision = decision
            self.last_result = None

            if not self.should_execute(decision, state):
                self.phase = CyclePhase.SKIPPED
                self.stats.skipped_executions += 1
                logger.info(
                    f"Cycle #{cycle_no}: health={state.health_status.name} "
                    f"decision={decision.action.value} -> not executed "
                    f"({time.monotonic() - started:.1f}s)"
                )
                return None

            self.phase = CyclePhase.EXECUTING
            result = await self.executor.execute(decision, state)
            self.last_result = result
            if result.success:
                self.stats.successful_actions += 1
            else:
                self.stats.failed_actions += 1
            logger.info(
                f"Cycle #{cycle_no}: health={state.health_status.name} "
                f"decision={decision.action.value} success={result.success} "
                f"tx={result.tx_hash or '-'} ({time.monotonic() - started:.1f}s)"
            )
            return result

        except Exception as e:
            self.stats.cycle_errors += 1
            logger.error(f"Cycle #{cycle_no} failed: {type(e).__name__}: {e}", exc_info=True)
            return None
        finally:
            self.phase = CyclePhase.IDLE

    async def run_cycle(self) -> Optional[ExecutionResult]:
        """One primary cycle, waiting for any in-flight work first."""
        async with self._lock:
            return await self._cycle()

    async def tick(self) -> Optional[ExecutionResult]:
        """Primary timer tick: skipped outright if a cycle is still in flight."""
        if self._lock.locked():
            self.stats.skipped_ticks += 1
            logger.warning("Previous cycle still running, skipping this tick")
            return None
        return await self.run_cycle()

    async def publish_cycle(self) -> Optional[ExecutionResult]:
        """Republish the last fused state. No-op before the first observation."""
        async with self._lock:
            state = self.last_state
            if state is None:
                logger.debug("No state observed yet, skipping publication")
                return None
            self.phase = CyclePhase.PUBLISHING
            try:
                result = await self.executor.publish_state(state)
            except Exception as e:
                result = ExecutionResult(
                    success=False, error=f"{type(e).__name__}: {e}", state_proof=state.state_hash
                )
            finally:
                self.phase = CyclePhase.IDLE

            self.last_publication = result
            if result.success:
                self.stats.publications_ok += 1
            else:
                self.stats.publications_failed += 1
                logger.warning(f"State publication failed: {result.error}")
            return result

    async def manual_action(
        self,
        action,
        lock_id: Optional[int] = None,
        amount: Optional[int] = None,
        duration: Optional[int] = None,
    ) -> ExecutionResult:
        """Operator-specified action against fresh state. Bypasses the oracle, not the lock."""
        kind = action if isinstance(action, ActionKind) else ActionKind(str(action).strip().upper())
        async with self._lock:
            state = await self.observer.fuse()
            self.last_state = state
            decision = Decision(
                action=kind,
                confidence=1.0,
                rationale="Manual operator action",
                lock_id=lock_id,
                amount=amount,
                duration=duration,
                constraints=("Manual override",),
                risk_level=RiskLevel.MEDIUM,
            )
            self.last_decision = decision
            logger.info(f"Manual action: {kind.value} lock={lock_id} amount={amount} duration={duration}")

            self.phase = CyclePhase.EXECUTING
            try:
                result = await self.executor.execute(decision, state)
            finally:
                self.phase = CyclePhase.IDLE

            self.last_result = result
            if result.success:
                self.stats.successful_actions += 1
            else:
                self.stats.failed_actions += 1
            return result

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _timer(self, interval: float, fn):
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self._spawn(fn())

    async def run(self):
        """Immediate cycle, then both timers until stop(). Returns once in-flight work drains."""
        self._stop_event.clear()
        self._running = True
        self._started_at = self._clock()
        logger.info(
            f"Orchestrator started: cycle every {self.cycle_interval:g}s, "
            f"publish every {self.publish_interval:g}s, emergency_only={self.emergency_only}"
        )
        try:
            await self.tick()
            await asyncio.gather(
                self._timer(self.cycle_interval, self.tick),
                self._timer(self.publish_interval, self.publish_cycle),
            )
            if self._inflight:
                await asyncio.gather(*list(self._inflight), return_exceptions=True)
        finally:
            self._running = False
            logger.info("Orchestrator stopped")

    def stop(self):
        """No new ticks after this. In-flight work is allowed to finish."""
        self._stop_event.set()

    # ============================================================
    # STATUS
    # ============================================================

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "phase": self.phase.value,
            "uptime_seconds": round(self._clock() - self._started_at, 1) if self._started_at else 0,
            "emergency_only": self.emergency_only,
            "cycle_interval_seconds": self.cycle_interval,
            "publish_interval_seconds": self.publish_interval,
            "stats": asdict(self.stats),
            "last_state": self.last_state.to_dict() if self.last_state else None,
            "last_decision": self.last_decision.to_dict() if self.last_decision else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_publication": self.last_publication.to_dict() if self.last_publication else None,
        }

    def log_stats(self):
        s = self.stats
        logger.info("=" * 60)
        logger.info(f"Cycles: {s.cycles} (errors: {s.cycle_errors}, skipped ticks: {s.skipped_ticks})")
        logger.info(
            f"Actions: {s.successful_actions} ok / {s.failed_actions} failed "
            f"/ {s.skipped_executions} not executed"
        )
        logger.info(f"Publications: {s.publications_ok} ok / {s.publications_failed} failed")
        logger.info("=" * 60)
