"""
Chain Client - On-Chain Read/Write Layer

Everything the agent does on-chain goes through here: lock enumeration,
fee data, balances, nonces, and the three write entry points of the LP
locker (lock, executeAIAction, updateMarketState) plus ERC20 approve.

Design:
- Sync Web3 calls wrapped in asyncio.run_in_executor() (web3.py async is fragile)
- Embedded minimal ABI - only the functions we call, no compiled JSON needed
- Static gas limit + priority fee from config, no estimation (deterministic)
- Transactions are signed by the Signer; this module never sees the key
- Non-fatal: chain failure -> ChainTxResult(success=False) -> next cycle re-observes
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from web3 import Web3

from .constitution import LockType
from .models import LockRecord

logger = logging.getLogger("locker.chain")


# ============================================================
# MINIMAL ABI - only functions we call at runtime
# ============================================================

LOCKER_ABI = [
    # lock(address lpToken, uint256 amount, uint8 lockType, uint256 duration, bytes32 conditionHash) -> lockId
    {
        "inputs": [
            {"name": "lpToken", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "lockType", "type": "uint8"},
            {"name": "duration", "type": "uint256"},
            {"name": "conditionHash", "type": "bytes32"},
        ],
        "name": "lock",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # executeAIAction((lockId, actionType, amount, stateHash, expiry) action, bytes signature)
    {
        "inputs": [
            {
                "components": [
                    {"name": "lockId", "type": "uint256"},
                    {"name": "actionType", "type": "uint8"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "stateHash", "type": "bytes32"},
                    {"name": "expiry", "type": "uint256"},
                ],
                "name": "action",
                "type": "tuple",
            },
            {"name": "signature", "type": "bytes"},
        ],
        "name": "executeAIAction",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # updateMarketState(tvl, volatility, liquidityDepth, priceImpact, health, signature)
    {
        "inputs": [
            {"name": "tvl", "type": "uint256"},
            {"name": "volatility", "type": "uint256"},
            {"name": "liquidityDepth", "type": "uint256"},
            {"name": "priceImpact", "type": "uint256"},
            {"name": "health", "type": "uint8"},
            {"name": "signature", "type": "bytes"},
        ],
        "name": "updateMarketState",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # lockRecords(uint256) -> (lpToken, amount, lockTime, unlockTime, lockType, owner, isLocked, conditionHash)
    {
        "inputs": [{"name": "", "type": "uint256"}],
        "name": "lockRecords",
        "outputs": [
            {"name": "lpToken", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "lockTime", "type": "uint256"},
            {"name": "unlockTime", "type": "uint256"},
            {"name": "lockType", "type": "uint8"},
            {"name": "owner", "type": "address"},
            {"name": "isLocked", "type": "bool"},
            {"name": "conditionHash", "type": "bytes32"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "lockIdCounter",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    # latestMarketState() -> (tvl, volatility, liquidityDepth, priceImpact, timestamp, health)
    {
        "inputs": [],
        "name": "latestMarketState",
        "outputs": [
            {"name": "tvl", "type": "uint256"},
            {"name": "volatility", "type": "uint256"},
            {"name": "liquidityDepth", "type": "uint256"},
            {"name": "priceImpact", "type": "uint256"},
            {"name": "timestamp", "type": "uint256"},
            {"name": "health", "type": "uint8"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    # aiNonces(address) -> uint256  (EIP-712 replay protection)
    {
        "inputs": [{"name": "", "type": "address"}],
        "name": "aiNonces",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class ChainTxResult:
    """Result of an on-chain transaction attempt."""
    success: bool
    tx_hash: str = ""
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: str = ""


@dataclass
class FeeData:
    gas_price_wei: int = 0
    max_priority_fee_wei: Optional[int] = None

    @property
    def gas_price_gwei(self) -> float:
        return self.gas_price_wei / 1e9


# ============================================================
# CHAIN CLIENT
# ============================================================

class ChainClient:
    """
    Web3-backed client for one LP locker deployment.

    Usage:
        client = ChainClient(rpc_url, locker_address, lp_token_address, signer=signer)
        count = await client.lock_count()
        result = await client.execute_ai_action(action_tuple, signature)
    """

    def __init__(
        self,
        rpc_url: str,
        locker_address: str,
        lp_token_address: str,
        signer=None,
        max_gas_limit: int = 500_000,
        max_priority_fee_wei: int = 2_000_000_000,
        request_timeout: int = 30,
        receipt_timeout: int = 120,
    ):
        self.locker_address = Web3.to_checksum_address(locker_address)
        self.lp_token_address = Web3.to_checksum_address(lp_token_address)
        self._signer = signer
        self._max_gas_limit = max_gas_limit
        self._max_priority_fee_wei = max_priority_fee_wei
        self._receipt_timeout = receipt_timeout

        self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self._locker = self._w3.eth.contract(address=self.locker_address, abi=LOCKER_ABI)
        self._lp_token = self._w3.eth.contract(address=self.lp_token_address, abi=ERC20_ABI)

        self._chain_id: Optional[int] = None
        self._tx_count: int = 0
        self._last_error: str = ""

    async def _call(self, fn, *args):
        """Run a blocking web3 call in the default executor."""
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    # ============================================================
    # READS
    # ============================================================

    async def is_connected(self) -> bool:
        try:
            return bool(await self._call(self._w3.is_connected))
        except Exception as e:
            logger.warning(f"RPC connectivity check failed: {e}")
            return False

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._call(lambda: self._w3.eth.chain_id))
        return self._chain_id

    async def lock_count(self) -> int:
        return int(await self._call(self._locker.functions.lockIdCounter().call))

    async def read_lock(self, lock_id: int) -> LockRecord:
        raw = await self._call(self._locker.functions.lockRecords(lock_id).call)
        lp_token, amount, lock_time, unlock_time, lock_type, owner, is_locked, condition_hash = raw
        return LockRecord(
            lock_id=lock_id,
            amount=int(amount),
            lock_type=LockType(int(lock_type)),
            lock_time=int(lock_time),
            unlock_time=int(unlock_time),
            owner=owner,
            is_locked=bool(is_locked),
            lp_token=lp_token,
            condition_hash=Web3.to_hex(condition_hash),
        )

    async def latest_market_state(self) -> Optional[dict]:
        """Last state published on-chain via updateMarketState, or None."""
        try:
            tvl, volatility, depth, impact, timestamp, health = await self._call(
                self._locker.functions.latestMarketState().call
            )
        except Exception as e:
            logger.debug(f"latestMarketState unavailable: {e}")
            return None
        return {
            "tvl": int(tvl),
            "volatility": int(volatility),
            "liquidity_depth": int(depth),
            "price_impact": int(impact),
            "timestamp": int(timestamp),
            "health": int(health),
        }

    async def fee_data(self) -> FeeData:
        gas_price = int(await self._call(lambda: self._w3.eth.gas_price))
        try:
            priority = int(await self._call(lambda: self._w3.eth.max_priority_fee))
        except Exception:
            priority = None     # pre-1559 chains
        return FeeData(gas_price_wei=gas_price, max_priority_fee_wei=priority)

    async def token_balance(self, owner: str) -> int:
        owner = Web3.to_checksum_address(owner)
        return int(await self._call(self._lp_token.functions.balanceOf(owner).call))

    async def token_allowance(self, owner: str, spender: str) -> int:
        fn = self._lp_token.functions.allowance(
            Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
        )
        return int(await self._call(fn.call))

    async def native_balance(self, address: str) -> int:
        address = Web3.to_checksum_address(address)
        return int(await self._call(self._w3.eth.get_balance, address))

    async def ai_nonce(self, address: str) -> int:
        address = Web3.to_checksum_address(address)
        return int(await self._call(self._locker.functions.aiNonces(address).call))

    # ============================================================
    # WRITE TRANSACTIONS
    # ============================================================

    async def _send_tx(self, label: str, tx_fn) -> ChainTxResult:
        """
        Build, sign, and send a transaction, then wait for the receipt.

        Gas limit and priority fee come from static config. A receipt with
        status != 1 is a failed result, not an exception.
        """
        if self._signer is None:
            return ChainTxResult(success=False, error="no signer configured")

        sender = self._signer.address
        try:
            chain_id = await self.chain_id()

            def _execute():
                nonce = self._w3.eth.get_transaction_count(sender, "pending")
                tx = tx_fn.build_transaction({
                    "from": sender,
                    "nonce": nonce,
                    "chainId": chain_id,
                    "gas": self._max_gas_limit,
                    "maxPriorityFeePerGas": self._max_priority_fee_wei,
                })
                raw = self._signer.sign_transaction(tx)
                tx_hash = self._w3.eth.send_raw_transaction(raw)
                receipt = self._w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self._receipt_timeout
                )
                return receipt, Web3.to_hex(tx_hash)

            receipt, tx_hash_hex = await self._call(_execute)

            gas_used = receipt.get("gasUsed")
            block_number = receipt.get("blockNumber")
            if receipt["status"] == 1:
                self._tx_count += 1
                logger.info(
                    f"TX SUCCESS [{label}]: {tx_hash_hex[:18]}... | "
                    f"block={block_number} | gas={gas_used}"
                )
                return ChainTxResult(
                    success=True,
                    tx_hash=tx_hash_hex,
                    block_number=block_number,
                    gas_used=gas_used,
                )

            error = f"TX reverted: {tx_hash_hex}"
            logger.warning(f"TX FAILED [{label}]: {error}")
            self._last_error = error
            return ChainTxResult(
                success=False,
                tx_hash=tx_hash_hex,
                block_number=block_number,
                gas_used=gas_used,
                error=error,
            )

        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR [{label}]: {error}")
            self._last_error = error
            return ChainTxResult(success=False, error=error)

    async def approve(self, spender: str, amount: int) -> ChainTxResult:
        fn = self._lp_token.functions.approve(Web3.to_checksum_address(spender), amount)
        return await self._send_tx("approve", fn)

    async def lock(
        self, amount: int, lock_type: LockType, duration: int, condition_hash: bytes
    ) -> ChainTxResult:
        fn = self._locker.functions.lock(
            self.lp_token_address, amount, int(lock_type), duration, condition_hash
        )
        return await self._send_tx("lock", fn)

    async def execute_ai_action(self, action: tuple, signature: str) -> ChainTxResult:
        """action = (lockId, actionType, amount, stateHash, expiry)"""
        fn = self._locker.functions.executeAIAction(action, Web3.to_bytes(hexstr=signature))
        return await self._send_tx("executeAIAction", fn)

    async def update_market_state(
        self,
        tvl: int,
        volatility: int,
        liquidity_depth: int,
        price_impact: int,
        health: int,
        signature: str,
    ) -> ChainTxResult:
        fn = self._locker.functions.updateMarketState(
            tvl, volatility, liquidity_depth, price_impact, health,
            Web3.to_bytes(hexstr=signature),
        )
        return await self._send_tx("updateMarketState", fn)

    # ============================================================
    # STATUS
    # ============================================================

    def get_status(self) -> dict:
        """Status for dashboard / debugging."""
        return {
            "locker_address": self.locker_address,
            "lp_token_address": self.lp_token_address,
            "chain_id": self._chain_id,
            "signer": self._signer.address if self._signer else "",
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
