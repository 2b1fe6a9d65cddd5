"""
Agent configuration - read once at startup from the environment.

.env is loaded by main.py (python-dotenv) before load_config() runs.
A missing or malformed required setting raises ConfigError; nothing else in
the agent is allowed to be fatal.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from web3 import Web3

from .constitution import ConstitutionViolation, parse_health_status
from .models import ConstraintConfig

logger = logging.getLogger("locker.config")


class ConfigError(Exception):
    """Startup configuration is missing or invalid."""
    pass


REQUIRED_VARS = (
    "RPC_URL",
    "LP_LOCKER_ADDRESS",
    "LP_TOKEN_ADDRESS",
    "PRIVATE_KEY",
    "DEXSCREENER_PAIR_ID",
)

ORACLE_MODES = ("llm", "rules")


@dataclass(frozen=True)
class AgentConfig:
    # Chain
    rpc_url: str
    locker_address: str
    lp_token_address: str
    private_key: str = field(repr=False)
    lp_token_decimals: int = 18
    max_gas_limit: int = 500_000
    max_priority_fee_wei: int = 2_000_000_000      # 2 gwei
    reference_gas_gwei: float = 30.0

    # Market
    pair_id: str = ""
    dexscreener_chain: str = "ethereum"
    dexscreener_base_url: str = "https://api.dexscreener.com"
    fetch_timeout_seconds: float = 15.0

    # Oracle
    oracle_mode: str = "llm"
    oracle_api_key: str = field(default="", repr=False)
    oracle_base_url: Optional[str] = None
    oracle_model: str = "gpt-4o-mini"
    oracle_timeout_seconds: float = 30.0

    # Scheduling
    cycle_interval_seconds: float = 300.0
    publish_interval_seconds: float = 3600.0
    emergency_only: bool = False

    # Constraints
    constraints: ConstraintConfig = field(default_factory=ConstraintConfig)

    # Inspection API
    api_enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8000


def _parse(env: Mapping[str, str], name: str, default, cast, errors: list):
    raw = env.get(name, "")
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return cast(str(raw).strip())
    except (ValueError, ConstitutionViolation) as e:
        errors.append(f"{name}={raw!r} is invalid ({e})")
        return default


def _parse_bool(raw: str) -> bool:
    value = raw.lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError("expected true/false")


def load_config(env: Optional[Mapping[str, str]] = None) -> AgentConfig:
    """
    Build AgentConfig from environment variables.

    Collects every problem before raising, so a single ConfigError names all
    missing/invalid settings at once.
    """
    env = os.environ if env is None else env
    errors: list[str] = []

    missing = [v for v in REQUIRED_VARS if not str(env.get(v, "")).strip()]
    oracle_mode = str(env.get("ORACLE_MODE", "llm")).strip().lower() or "llm"
    if oracle_mode not in ORACLE_MODES:
        errors.append(f"ORACLE_MODE={oracle_mode!r} is invalid (expected one of {ORACLE_MODES})")
    if oracle_mode == "llm" and not str(env.get("OPENAI_API_KEY", "")).strip():
        missing.append("OPENAI_API_KEY")
    if missing:
        errors.append(f"Missing environment variables: {', '.join(missing)}")

    addresses = {}
    for var in ("LP_LOCKER_ADDRESS", "LP_TOKEN_ADDRESS"):
        raw = str(env.get(var, "")).strip()
        if raw and not Web3.is_address(raw):
            errors.append(f"{var}={raw!r} is not a valid address")
        elif raw:
            addresses[var] = Web3.to_checksum_address(raw)

    defaults = ConstraintConfig()
    try:
        constraints = ConstraintConfig(
            max_unlock_ratio=_parse(env, "MAX_UNLOCK_RATIO", defaults.max_unlock_ratio, float, errors),
            min_lock_duration=_parse(env, "MIN_LOCK_DURATION", defaults.min_lock_duration, int, errors),
            max_gas_price_gwei=_parse(env, "MAX_GAS_PRICE", defaults.max_gas_price_gwei, float, errors),
            emergency_threshold=_parse(
                env, "EMERGENCY_THRESHOLD", defaults.emergency_threshold, parse_health_status, errors
            ),
            cooldown_seconds=_parse(env, "COOLDOWN_SECONDS", defaults.cooldown_seconds, int, errors),
        )
    except ConstitutionViolation as e:
        errors.append(str(e))
        constraints = defaults

    cfg = dict(
        lp_token_decimals=_parse(env, "LP_TOKEN_DECIMALS", 18, int, errors),
        max_gas_limit=_parse(env, "MAX_GAS_LIMIT", 500_000, int, errors),
        max_priority_fee_wei=_parse(env, "MAX_PRIORITY_FEE", 2_000_000_000, int, errors),
        reference_gas_gwei=_parse(env, "REFERENCE_GAS_PRICE_GWEI", 30.0, float, errors),
        fetch_timeout_seconds=_parse(env, "FETCH_TIMEOUT_SECONDS", 15.0, float, errors),
        oracle_timeout_seconds=_parse(env, "ORACLE_TIMEOUT_SECONDS", 30.0, float, errors),
        cycle_interval_seconds=_parse(env, "CYCLE_INTERVAL_SECONDS", 300.0, float, errors),
        publish_interval_seconds=_parse(env, "STATE_UPDATE_INTERVAL_SECONDS", 3600.0, float, errors),
        emergency_only=_parse(env, "EMERGENCY_ONLY", False, _parse_bool, errors),
        api_enabled=_parse(env, "API_ENABLED", True, _parse_bool, errors),
        port=_parse(env, "PORT", 8000, int, errors),
    )

    for name in ("cycle_interval_seconds", "publish_interval_seconds",
                 "fetch_timeout_seconds", "oracle_timeout_seconds"):
        if cfg[name] <= 0:
            errors.append(f"{name} must be positive (got {cfg[name]})")
    if cfg["max_gas_limit"] <= 0:
        errors.append(f"MAX_GAS_LIMIT must be positive (got {cfg['max_gas_limit']})")

    if errors:
        raise ConfigError("; ".join(errors))

    config = AgentConfig(
        rpc_url=str(env["RPC_URL"]).strip(),
        locker_address=addresses["LP_LOCKER_ADDRESS"],
        lp_token_address=addresses["LP_TOKEN_ADDRESS"],
        private_key=str(env["PRIVATE_KEY"]).strip(),
        pair_id=str(env["DEXSCREENER_PAIR_ID"]).strip(),
        dexscreener_chain=str(env.get("DEXSCREENER_CHAIN", "") or "ethereum").strip(),
        dexscreener_base_url=str(
            env.get("DEXSCREENER_BASE_URL", "") or "https://api.dexscreener.com"
        ).strip().rstrip("/"),
        oracle_mode=oracle_mode,
        oracle_api_key=str(env.get("OPENAI_API_KEY", "")).strip(),
        oracle_base_url=str(env.get("OPENAI_BASE_URL", "")).strip() or None,
        oracle_model=str(env.get("AI_MODEL", "") or "gpt-4o-mini").strip(),
        constraints=constraints,
        host=str(env.get("HOST", "") or "0.0.0.0").strip(),
        **cfg,
    )
    logger.debug(f"Config loaded: {config}")
    return config
