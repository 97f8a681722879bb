"""
Chain Reader contract consumed by the reconciliation engine.

A reader answers one question per call: what does the chain currently say
about a transaction hash. The answer is either a ``TransactionEnvelope`` or
``NotFound``; absence is an expected outcome while a transaction propagates,
so it is modelled as a value rather than an exception. ``ChainReadError`` is
reserved for transport failures (timeouts, RPC errors).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Union

NATIVE_TOKEN_ADDRESS = "0x0"


class ChainReadError(Exception):
    """The chain could not be queried; the answer is unknown, not negative."""


@dataclass(frozen=True)
class NotFound:
    tx_hash: str


@dataclass(frozen=True)
class TransactionEnvelope:
    hash: str
    from_address: str
    to_address: str
    value: str
    gas: str = "0"
    gas_price: str = "0"
    nonce: int = 0
    block_number: Optional[int] = None
    confirmations: int = 0
    timestamp: Optional[int] = None
    status: Optional[str] = None  # pending, confirmed, failed
    is_erc20_transfer: bool = False
    actual_sender: Optional[str] = None
    actual_recipient: Optional[str] = None
    token_address: Optional[str] = None
    token_amount: Optional[str] = None

    @property
    def decoded(self) -> bool:
        return self.is_erc20_transfer and bool(self.actual_recipient)

    @property
    def effective_from_address(self) -> str:
        # transferFrom moves tokens out of a third party's balance
        if self.decoded and self.actual_sender:
            return self.actual_sender
        return self.from_address

    @property
    def effective_to_address(self) -> str:
        return self.actual_recipient if self.decoded else self.to_address

    @property
    def effective_amount(self) -> str:
        if self.decoded and self.token_amount is not None:
            return self.token_amount
        return self.value

    def effective_token_address(self, default: Optional[str] = None) -> str:
        if self.decoded and self.token_address:
            return self.token_address
        return default or NATIVE_TOKEN_ADDRESS

    def details(self) -> dict:
        """Snapshot stored on the record as ``blockchain_details``."""
        return {
            "gas": self.gas,
            "gas_price": self.gas_price,
            "nonce": self.nonce,
            "block_number": self.block_number,
            "confirmations": self.confirmations,
            "timestamp": self.timestamp,
            "chain_status": self.status,
            "is_erc20_transfer": self.is_erc20_transfer,
            "contract_address": self.to_address if self.is_erc20_transfer else None,
        }


ChainLookup = Union[TransactionEnvelope, NotFound]


class ChainReader(ABC):
    """Read-only, per-network view of transactions. Calls must be idempotent."""

    @abstractmethod
    def get_transaction_details(self, network: str, tx_hash: str) -> ChainLookup:
        ...

    def is_transaction_confirmed(self, network: str, tx_hash: str, threshold: int = 1) -> bool:
        lookup = self.get_transaction_details(network, tx_hash)
        if isinstance(lookup, NotFound) or lookup.block_number is None:
            return False
        return lookup.confirmations >= threshold

    @abstractmethod
    def get_supported_networks(self) -> List[str]:
        ...
