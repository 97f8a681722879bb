from typing import Dict, List, Optional

import structlog
from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from txstatus.chain_reader import ChainReader, ChainReadError, ChainLookup, NotFound, TransactionEnvelope
from txstatus.config import Settings
from txstatus.erc20 import decode_transfer_input

logger = structlog.get_logger(__name__)

POA_NETWORKS = {"bsc"}


def _hex(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class Web3ChainReader(ChainReader):
    """Chain reader backed by one JSON-RPC client per configured network."""

    def __init__(self, settings: Settings, clients: Optional[Dict[str, Web3]] = None):
        self.settings = settings
        if clients is not None:
            self.clients = dict(clients)
        else:
            self.clients = {
                network: self._connect(network, url)
                for network, url in settings.rpc_urls.items()
                if url
            }

    def _connect(self, network: str, url: str) -> Web3:
        w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self.settings.rpc_timeout}))
        if network in POA_NETWORKS:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return w3

    def _client(self, network: str) -> Web3:
        try:
            return self.clients[network]
        except KeyError:
            raise ChainReadError(f"Network {network} not configured") from None

    def get_transaction_details(self, network: str, tx_hash: str) -> ChainLookup:
        w3 = self._client(network)
        try:
            try:
                tx = w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return NotFound(tx_hash)

            try:
                receipt = w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                receipt = None

            block_number = tx.get("blockNumber")
            timestamp = None
            confirmations = 0
            if block_number is not None:
                block = w3.eth.get_block(block_number)
                timestamp = block.get("timestamp")
                confirmations = max(0, w3.eth.block_number - block_number)
        except Exception as e:
            logger.warning("Chain query failed", network=network, tx_hash=tx_hash, error=str(e))
            raise ChainReadError(f"Failed to read {tx_hash} on {network}: {e}") from e

        if receipt is None:
            status = "pending"
        else:
            status = "confirmed" if receipt.get("status") == 1 else "failed"

        to_address = tx.get("to") or ""
        transfer = decode_transfer_input(tx.get("input"))

        envelope = TransactionEnvelope(
            hash=_hex(tx.get("hash")) or tx_hash,
            from_address=tx["from"],
            to_address=to_address,
            value=str(tx.get("value", 0)),
            gas=str(tx.get("gas", 0)),
            gas_price=str(tx.get("gasPrice") or 0),
            nonce=tx.get("nonce", 0),
            block_number=block_number,
            confirmations=confirmations,
            timestamp=timestamp,
            status=status,
            is_erc20_transfer=transfer is not None,
            actual_sender=transfer.sender if transfer else None,
            actual_recipient=transfer.recipient if transfer else None,
            token_address=to_address if transfer else None,
            token_amount=str(transfer.amount) if transfer else None,
        )

        if transfer is not None:
            logger.debug(
                "Decoded ERC-20 transfer",
                tx_hash=tx_hash,
                contract=to_address,
                recipient=transfer.recipient,
                amount=str(transfer.amount),
            )
        return envelope

    def get_supported_networks(self) -> List[str]:
        return list(self.clients)
