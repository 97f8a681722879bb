from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class Role(str, Enum):
    SENDER = "sender"
    RECIPIENT = "recipient"
    TRACKING = "tracking"


@dataclass(frozen=True)
class Counterparties:
    role: Role
    from_user_id: Optional[str]
    to_user_id: Optional[str]


AddressLookup = Callable[[str], Optional[str]]


def _norm(address: Optional[str]) -> str:
    return (address or "").strip().lower()


def resolve_counterparties(
    submitting_user_id: str,
    submitting_wallet: Optional[str],
    from_address: str,
    to_address: str,
    lookup_by_address: AddressLookup,
) -> Counterparties:
    """
    Decide who the submitting user is in a transfer, by wallet address only.

    ``from_address``/``to_address`` must already be the effective addresses
    (decoded recipient for ERC-20 transfers). ``lookup_by_address`` returns
    the user id owning a wallet, or None.
    """
    wallet = _norm(submitting_wallet)
    sender = _norm(from_address)
    recipient = _norm(to_address)

    if wallet and sender == wallet:
        # Self-transfers and unknown recipients land on the submitter.
        return Counterparties(
            role=Role.SENDER,
            from_user_id=submitting_user_id,
            to_user_id=lookup_by_address(recipient) or submitting_user_id,
        )

    if wallet and recipient == wallet:
        return Counterparties(
            role=Role.RECIPIENT,
            from_user_id=lookup_by_address(sender),
            to_user_id=submitting_user_id,
        )

    return Counterparties(role=Role.TRACKING, from_user_id=None, to_user_id=submitting_user_id)
