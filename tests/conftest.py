from __future__ import annotations

import pytest

from locker.config import REQUIRED_VARS
from locker.signer import LocalSigner

from fakes import DEV_PRIVATE_KEY, LOCKER_ADDRESS, LP_TOKEN_ADDRESS


@pytest.fixture(autouse=True)
def isolate_config_from_host_env(monkeypatch: pytest.MonkeyPatch):
    for key in (*REQUIRED_VARS, "OPENAI_API_KEY", "ORACLE_MODE", "EMERGENCY_ONLY"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def signer() -> LocalSigner:
    return LocalSigner(DEV_PRIVATE_KEY)


@pytest.fixture
def base_env() -> dict[str, str]:
    return {
        "RPC_URL": "http://127.0.0.1:8545",
        "LP_LOCKER_ADDRESS": LOCKER_ADDRESS.lower(),
        "LP_TOKEN_ADDRESS": LP_TOKEN_ADDRESS,
        "PRIVATE_KEY": DEV_PRIVATE_KEY,
        "DEXSCREENER_PAIR_ID": "0xpair",
        "OPENAI_API_KEY": "sk-test",
    }
