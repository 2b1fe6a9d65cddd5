"""
LP Lock Agent - main entry point

Loads config, wires the observer / policy / execution / orchestrator stack,
starts the loop. One file to understand how everything connects.

Usage:
    python main.py                                  # loop + inspection API
    python main.py --no-api                         # loop only (headless)
    python main.py --once                           # one cycle, then exit
    python main.py --manual UNLOCK --lock-id 3 --amount 1000000
"""

import os
import sys
import signal
import asyncio
import logging
import argparse
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """
    Redact secrets from all log output.

    Bare 64-char hex runs (unprefixed private keys) are always masked.
    0x-prefixed 32-byte values are tx / state hashes and stay readable;
    configured secrets are registered with add_secret() and masked verbatim,
    with or without their 0x prefix.
    """
    import re as _re
    _PATTERN = _re.compile(r'(?<![0-9a-fA-F])(?<!0[xX])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def __init__(self):
        super().__init__()
        self._secrets: list[str] = []

    def add_secret(self, secret: str):
        secret = (secret or "").strip()
        bare = secret[2:] if secret[:2].lower() == "0x" else secret
        if len(bare) >= 8 and bare not in self._secrets:
            self._secrets.append(bare)

    def _mask(self, text: str) -> str:
        for secret in self._secrets:
            text = self._re.sub(r'(?:0[xX])?' + self._re.escape(secret), '[REDACTED]', text)
        return self._PATTERN.sub('[REDACTED]', text)

    def _leaks(self, text: str) -> bool:
        return bool(self._PATTERN.search(text)) or any(s in text for s in self._secrets)

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._leaks(formatted):
                record.msg = self._mask(formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("locker.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from locker.constitution import ActionKind
from locker.config import AgentConfig, ConfigError, load_config
from locker.signer import LocalSigner
from locker.chain import ChainClient
from locker.market import DexScreenerClient
from locker.observer import StateObserver
from locker.oracle import LLMPolicyOracle, RuleBasedOracle
from locker.policy import PolicyEngine
from locker.execution import ExecutionEngine
from locker.orchestrator import CycleOrchestrator
from api.server import create_app

SHUTDOWN_GRACE_SECONDS = 30


# ============================================================
# WIRING
# ============================================================

def build_agent(config: AgentConfig) -> tuple[CycleOrchestrator, list]:
    """Wire every component from config. Returns (orchestrator, async closers)."""
    signer = LocalSigner(config.private_key)

    chain = ChainClient(
        rpc_url=config.rpc_url,
        locker_address=config.locker_address,
        lp_token_address=config.lp_token_address,
        signer=signer,
        max_gas_limit=config.max_gas_limit,
        max_priority_fee_wei=config.max_priority_fee_wei,
    )
    market = DexScreenerClient(
        chain=config.dexscreener_chain,
        pair_id=config.pair_id,
        base_url=config.dexscreener_base_url,
        timeout=config.fetch_timeout_seconds,
    )
    observer = StateObserver(
        market,
        chain,
        lp_decimals=config.lp_token_decimals,
        reference_gas_gwei=config.reference_gas_gwei,
        fetch_timeout=config.fetch_timeout_seconds,
    )

    if config.oracle_mode == "rules":
        oracle = RuleBasedOracle()
    else:
        oracle = LLMPolicyOracle(
            api_key=config.oracle_api_key,
            model=config.oracle_model,
            base_url=config.oracle_base_url,
            timeout=config.oracle_timeout_seconds,
        )

    policy = PolicyEngine(oracle, config.constraints, oracle_timeout=config.oracle_timeout_seconds)
    executor = ExecutionEngine(chain, signer)

    orchestrator = CycleOrchestrator(
        observer,
        policy,
        executor,
        cycle_interval=config.cycle_interval_seconds,
        publish_interval=config.publish_interval_seconds,
        emergency_only=config.emergency_only,
    )
    return orchestrator, [market.close, oracle.close]


async def _startup_report(orchestrator: CycleOrchestrator, config: AgentConfig):
    executor = orchestrator.executor
    logger.info("=" * 60)
    logger.info("LP Lock Agent starting")
    logger.info(f"Wallet: {executor.wallet_address}")
    logger.info(f"Locker: {config.locker_address} | LP token: {config.lp_token_address}")
    logger.info(f"Oracle: {config.oracle_mode} ({config.oracle_model if config.oracle_mode == 'llm' else 'deterministic'})")
    logger.info(f"Constraints: {config.constraints.to_dict()}")
    try:
        native = await executor.native_balance()
        lp = await executor.lp_balance()
        logger.info(f"Native balance: {native / 1e18:.6f} | LP balance: {lp}")
        if native == 0:
            logger.warning("Wallet has no native balance, transactions will fail")
    except Exception as e:
        logger.warning(f"Could not read wallet balances: {e}")
    logger.info("=" * 60)


async def _shutdown(orchestrator: CycleOrchestrator, run_task: asyncio.Task, closers: list):
    orchestrator.stop()
    try:
        await asyncio.wait_for(asyncio.shield(run_task), timeout=SHUTDOWN_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"In-flight cycle did not finish within {SHUTDOWN_GRACE_SECONDS}s, cancelling")
        run_task.cancel()
    except Exception as e:
        logger.error(f"Orchestrator exited with error: {e}")
    for close in closers:
        try:
            await close()
        except Exception as e:
            logger.warning(f"Error closing client: {e}")
    orchestrator.log_stats()


# ============================================================
# APP LIFECYCLE
# ============================================================

def create_lifespan(orchestrator: CycleOrchestrator, config: AgentConfig, closers: list):
    @asynccontextmanager
    async def lifespan(app):
        """Startup and shutdown."""
        await _startup_report(orchestrator, config)
        run_task = asyncio.create_task(orchestrator.run())
        yield
        logger.info("LP Lock Agent shutting down...")
        await _shutdown(orchestrator, run_task, closers)
        logger.info("Goodbye.")

    return lifespan


async def run_headless(orchestrator: CycleOrchestrator, config: AgentConfig, closers: list):
    await _startup_report(orchestrator, config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.stop)
        except NotImplementedError:
            pass    # Windows: KeyboardInterrupt still ends asyncio.run()
    run_task = asyncio.create_task(orchestrator.run())
    await run_task
    await _shutdown(orchestrator, run_task, closers)


async def run_once(orchestrator: CycleOrchestrator, config: AgentConfig, closers: list) -> int:
    await _startup_report(orchestrator, config)
    await orchestrator.run_cycle()
    await orchestrator.publish_cycle()
    for close in closers:
        await close()
    orchestrator.log_stats()
    return 0 if orchestrator.stats.cycle_errors == 0 else 1


async def run_manual(orchestrator: CycleOrchestrator, closers: list, args) -> int:
    result = await orchestrator.manual_action(
        args.manual, lock_id=args.lock_id, amount=args.amount, duration=args.duration
    )
    for close in closers:
        await close()
    if result.success:
        logger.info(f"Manual {args.manual} succeeded: tx={result.tx_hash or '-'}")
        return 0
    logger.error(f"Manual {args.manual} failed: {result.error}")
    return 1


# ============================================================
# ENTRY POINT
# ============================================================

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Autonomous LP locker agent")
    parser.add_argument("--no-api", action="store_true", help="run the loop without the HTTP surface")
    parser.add_argument("--once", action="store_true", help="run one cycle and one publication, then exit")
    parser.add_argument("--manual", metavar="ACTION", help="execute one operator action and exit")
    parser.add_argument("--lock-id", type=int)
    parser.add_argument("--amount", type=int)
    parser.add_argument("--duration", type=int)
    args = parser.parse_args(argv)

    try:
        config = load_config()
    except ConfigError as e:
        logger.critical(f"Configuration error: {e}")
        return 1
    _mask_filter.add_secret(config.private_key)
    _mask_filter.add_secret(config.oracle_api_key)

    try:
        orchestrator, closers = build_agent(config)
    except ValueError as e:
        logger.critical(f"Startup failed: {e}")
        return 1

    if args.manual:
        try:
            ActionKind(args.manual.strip().upper())
        except ValueError:
            logger.critical(f"Unknown action {args.manual!r}. Supported: {[a.value for a in ActionKind]}")
            return 2
        return asyncio.run(run_manual(orchestrator, closers, args))
    if args.once:
        return asyncio.run(run_once(orchestrator, config, closers))
    if args.no_api or not config.api_enabled:
        asyncio.run(run_headless(orchestrator, config, closers))
        return 0

    app = create_app(orchestrator, lifespan=create_lifespan(orchestrator, config, closers))
    logger.info(f"Starting server on {config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port, log_level=LOG_LEVEL.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
