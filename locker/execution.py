"""
Execution Engine - Decision in, on-chain transaction out.

  HOLD                       -> no transaction
  LOCK                       -> balance check, approve if allowance short, lock()
  UNLOCK / EXTEND_LOCK /
  MODIFY_AMOUNT /
  EMERGENCY_UNLOCK           -> EIP-712 signed AIAction -> executeAIAction()

publish_state() signs the fused state (EIP-191 over a packed keccak digest)
and submits it with updateMarketState().

Never raises: every failure is an ExecutionResult(success=False, error=...).
"""

import logging
import time
from typing import Optional

from web3 import Web3

from .chain import ChainTxResult
from .constitution import (
    ActionKind, LockType, SAFETY_LAWS, AI_ACTION_TYPES,
    EIP712_DOMAIN_NAME, EIP712_DOMAIN_VERSION, MAX_UINT256, ZERO_HASH,
)
from .models import Decision, ExecutionResult, FusedState
from .observer import to_fixed

logger = logging.getLogger("locker.execution")


def _from_tx(tx: ChainTxResult, extra_tx_hashes: Optional[list] = None) -> ExecutionResult:
    return ExecutionResult(
        success=tx.success,
        tx_hash=tx.tx_hash,
        block_number=tx.block_number,
        gas_used=tx.gas_used,
        error=tx.error,
        extra_tx_hashes=list(extra_tx_hashes or []),
    )


class ExecutionEngine:
    """
    Usage:
        engine = ExecutionEngine(chain_client, signer)
        result = await engine.execute(decision, state)
    """

    PUBLISH_TYPES = ["uint256", "uint256", "uint256", "uint256", "uint8", "uint256"]

    def __init__(self, chain, signer, clock=time.time):
        self._chain = chain
        self._signer = signer
        self._clock = clock

    @property
    def wallet_address(self) -> str:
        return self._signer.address

    async def native_balance(self) -> int:
        return await self._chain.native_balance(self.wallet_address)

    async def lp_balance(self) -> int:
        return await self._chain.token_balance(self.wallet_address)

    # ============================================================
    # EIP-712
    # ============================================================

    async def domain(self) -> dict:
        return {
            "name": EIP712_DOMAIN_NAME,
            "version": EIP712_DOMAIN_VERSION,
            "chainId": await self._chain.chain_id(),
            "verifyingContract": self._chain.locker_address,
        }

    def action_amount(self, decision: Decision) -> int:
        """The uint256 `amount` field of the AIAction for this decision."""
        if decision.action == ActionKind.EXTEND_LOCK:
            return int(decision.duration or SAFETY_LAWS.DEFAULT_LOCK_DURATION_SECONDS)
        if decision.action == ActionKind.EMERGENCY_UNLOCK:
            return 0
        return int(decision.amount or 0)

    async def build_ai_action(self, decision: Decision, state: FusedState) -> dict:
        """Typed AIAction message, nonce read fresh from the contract."""
        expiry_seconds = (
            SAFETY_LAWS.EMERGENCY_EXPIRY_SECONDS
            if decision.action == ActionKind.EMERGENCY_UNLOCK
            else SAFETY_LAWS.ACTION_EXPIRY_SECONDS
        )
        return {
            "lockId": int(decision.lock_id),
            "actionType": decision.action.contract_code,
            "amount": self.action_amount(decision),
            "stateHash": Web3.to_bytes(hexstr=state.state_hash),
            "expiry": int(self._clock()) + expiry_seconds,
            "nonce": await self._chain.ai_nonce(self.wallet_address),
        }

    # ============================================================
    # EXECUTE
    # ============================================================

    async def _execute_lock(self, decision: Decision) -> ExecutionResult:
        amount = decision.amount
        if amount is None or amount <= 0:
            return ExecutionResult(success=False, error="LOCK requires a positive amount")

        wallet = self.wallet_address
        balance = await self._chain.token_balance(wallet)
        if balance < amount:
            return ExecutionResult(
                success=False, error=f"Insufficient LP balance: have {balance}, need {amount}"
            )

        extra = []
        allowance = await self._chain.token_allowance(wallet, self._chain.locker_address)
        if allowance < amount:
            logger.info(f"Allowance {allowance} < {amount}, approving locker")
            approval = await self._chain.approve(self._chain.locker_address, MAX_UINT256)
            if not approval.success:
                return ExecutionResult(
                    success=False,
                    tx_hash=approval.tx_hash,
                    error=f"Approval failed: {approval.error}",
                )
            extra.append(approval.tx_hash)

        duration = decision.duration or SAFETY_LAWS.DEFAULT_LOCK_DURATION_SECONDS
        tx = await self._chain.lock(amount, LockType.TIME_LOCKED, duration, ZERO_HASH)
        return _from_tx(tx, extra)

    async def _execute_ai_action(self, decision: Decision, state: FusedState) -> ExecutionResult:
        if decision.lock_id is None:
            return ExecutionResult(
                success=False, error=f"{decision.action.value} requires a lock id"
            )

        message = await self.build_ai_action(decision, state)
        signature = self._signer.sign_typed_data(await self.domain(), AI_ACTION_TYPES, message)
        action = (
            message["lockId"],
            message["actionType"],
            message["amount"],
            message["stateHash"],
            message["expiry"],
        )
        tx = await self._chain.execute_ai_action(action, signature)
        return _from_tx(tx)

    async def execute(self, decision: Decision, state: FusedState) -> ExecutionResult:
        if decision.is_hold:
            return ExecutionResult(success=True, state_proof=state.state_hash)

        try:
            if decision.action == ActionKind.LOCK:
                result = await self._execute_lock(decision)
            else:
                result = await self._execute_ai_action(decision, state)
        except Exception as e:
            result = ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")

        result.state_proof = state.state_hash
        if result.success:
            logger.info(
                f"Executed {decision.action.value} lock={decision.lock_id}: "
                f"tx={result.tx_hash} block={result.block_number} gas={result.gas_used}"
            )
        else:
            logger.warning(f"Execution of {decision.action.value} failed: {result.error}")
        return result

    # ============================================================
    # STATE PUBLICATION
    # ============================================================

    def publication_payload(self, state: FusedState) -> tuple[list, bytes]:
        """(fixed-point values, keccak digest) for updateMarketState."""
        m, h = state.market, state.health
        impact = m.volume_24h / m.liquidity if m.liquidity > 0 else 0.0
        values = [
            to_fixed(h.tvl, SAFETY_LAWS.TVL_SCALE_DECIMALS),
            to_fixed(h.volatility, SAFETY_LAWS.VOLATILITY_SCALE_DECIMALS),
            to_fixed(m.liquidity, SAFETY_LAWS.PRICE_SCALE_DECIMALS),
            to_fixed(impact, SAFETY_LAWS.RATIO_SCALE_DECIMALS),
            int(state.health_status),
            int(self._clock()) // SAFETY_LAWS.PUBLISH_BUCKET_SECONDS,
        ]
        digest = bytes(Web3.solidity_keccak(self.PUBLISH_TYPES, values))
        return values, digest

    async def publish_state(self, state: FusedState) -> ExecutionResult:
        try:
            values, digest = self.publication_payload(state)
            signature = self._signer.sign_message(digest)
            tvl, volatility, liquidity, impact, health, _bucket = values
            tx = await self._chain.update_market_state(
                tvl, volatility, liquidity, impact, health, signature
            )
            result = _from_tx(tx)
        except Exception as e:
            logger.warning(f"State publication failed: {type(e).__name__}: {e}")
            result = ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")

        result.state_proof = state.state_hash
        if result.success:
            logger.info(f"Published state {state.state_hash[:18]}... health={state.health_status.name}")
        return result
