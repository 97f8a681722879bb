from dataclasses import dataclass
from typing import Optional, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError

TRANSFER_SELECTOR = "a9059cbb"  # transfer(address,uint256)
TRANSFER_FROM_SELECTOR = "23b872dd"  # transferFrom(address,address,uint256)


@dataclass(frozen=True)
class Erc20Transfer:
    recipient: str
    amount: int
    sender: Optional[str] = None  # set for transferFrom only


def _as_hex(data: Union[str, bytes, None]) -> str:
    if data is None:
        return ""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).hex()
    if data.startswith(("0x", "0X")):
        return data[2:]
    return data


def decode_transfer_input(data: Union[str, bytes, None]) -> Optional[Erc20Transfer]:
    """
    Recover the token recipient and amount hidden in ERC-20 call data.

    Returns None for anything that is not a well-formed ``transfer`` or
    ``transferFrom`` call, including plain native transfers with empty input.
    """
    payload = _as_hex(data).lower()
    if len(payload) < 8:
        return None

    selector, args = payload[:8], payload[8:]
    try:
        raw = bytes.fromhex(args)
    except ValueError:
        return None

    try:
        if selector == TRANSFER_SELECTOR:
            recipient, amount = decode(["address", "uint256"], raw)
            return Erc20Transfer(recipient=recipient, amount=amount)
        if selector == TRANSFER_FROM_SELECTOR:
            sender, recipient, amount = decode(["address", "address", "uint256"], raw)
            return Erc20Transfer(recipient=recipient, amount=amount, sender=sender)
    except DecodingError:
        return None
    return None
