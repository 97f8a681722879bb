import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")

Status = Literal["pending", "completed", "failed"]


def is_valid_tx_hash(value: Any) -> bool:
    return isinstance(value, str) and bool(TX_HASH_RE.match(value))


class ProcessTransactionRequest(BaseModel):
    tx_hash: str = Field(..., description="Transaction hash to reconcile")
    network_id: int = Field(1, description="Numeric chain id")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Caller metadata stored on the record")

    @field_validator("tx_hash")
    @classmethod
    def validate_tx_hash(cls, v):
        if not v.startswith("0x"):
            raise ValueError("tx_hash must start with 0x")
        if not is_valid_tx_hash(v):
            raise ValueError("tx_hash must be at most 64 hex characters after 0x")
        return v


class IntakeResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    created: bool = False
    message: Optional[str] = None
    error: Optional[str] = None


class StatusCheckResult(BaseModel):
    is_confirmed: bool
    status: Status
    confirmations: int = 0
    block_number: Optional[int] = None
    error: Optional[str] = None


class NetworkSweepStats(BaseModel):
    total: int = 0
    fixed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0


class SweepError(BaseModel):
    transaction_id: str
    tx_hash: str
    error: str


class SweepReport(BaseModel):
    dry_run: bool = False
    total: int = 0
    fixed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    networks: Dict[str, NetworkSweepStats] = Field(default_factory=dict)
    error_details: List[SweepError] = Field(default_factory=list)
    duration: float = 0.0


class SupportedNetworksResponse(BaseModel):
    networks: List[str]


class TransactionOut(BaseModel):
    id: str
    tx_hash: str
    network_id: int
    network_name: str
    type: str
    category: str
    status: Status
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    from_address: str
    to_address: str
    amount: str
    token_address: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
