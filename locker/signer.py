"""
Signer - the only holder of the agent's private key.

Produces three kinds of signatures:
  - EIP-712 typed data (signed AI actions, bound to contract + chain + nonce)
  - EIP-191 personal messages (state publication proofs)
  - raw transactions (handed to the chain client for broadcast)

Other components only ever see the address and the signatures.
"""

import logging
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data

logger = logging.getLogger("locker.signer")


class LocalSigner:
    """Holds a private key in-process and signs on request."""

    def __init__(self, private_key: str):
        try:
            self._account = Account.from_key(private_key)
        except Exception as e:
            # Never echo the key back in the error
            raise ValueError(f"Invalid private key: {type(e).__name__}") from None

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(self, domain: dict, types: dict, message: dict) -> str:
        """
        EIP-712 sign `message` under `domain`.

        `types` holds the struct schema without EIP712Domain; the domain type
        is derived from the keys present in `domain`.
        """
        signable = encode_typed_data(domain_data=domain, message_types=types, message_data=message)
        signed = self._account.sign_message(signable)
        return "0x" + bytes(signed.signature).hex()

    def sign_message(self, data: bytes) -> str:
        """EIP-191 personal_sign over raw bytes (e.g. a 32-byte digest)."""
        signed = self._account.sign_message(encode_defunct(primitive=data))
        return "0x" + bytes(signed.signature).hex()

    def sign_transaction(self, tx: dict) -> bytes:
        """Sign a fully built transaction dict, return the raw bytes to broadcast."""
        signed = self._account.sign_transaction(tx)
        return bytes(signed.raw_transaction)

    def __repr__(self) -> str:
        return f"LocalSigner(address={self.address})"


# ============================================================
# VERIFICATION (audit / tests)
# ============================================================

def recover_typed_data_signer(domain: dict, types: dict, message: dict, signature: str) -> Optional[str]:
    """Recover the address that produced an EIP-712 signature, or None if invalid."""
    try:
        signable = encode_typed_data(domain_data=domain, message_types=types, message_data=message)
        return Account.recover_message(signable, signature=signature)
    except Exception as e:
        logger.warning(f"Typed data signature verification failed: {e}")
        return None


def recover_message_signer(data: bytes, signature: str) -> Optional[str]:
    """Recover the signer of an EIP-191 signature over raw bytes, or None if invalid."""
    try:
        return Account.recover_message(encode_defunct(primitive=data), signature=signature)
    except Exception as e:
        logger.warning(f"Message signature verification failed: {e}")
        return None
