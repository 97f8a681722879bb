import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint, Index

from txstatus.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class TransactionRecord(Base):
    """
    A blockchain transaction observed on behalf of a user.

    The record is created on the first submission of a hash and mutated in
    place by status polls; it is never replaced or deleted by reconciliation.
    ``tx_hash`` carries a unique constraint so concurrent intakes of the same
    hash collapse onto one row.
    """
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tx_hash = Column(String, nullable=False)
    network_id = Column(Integer, nullable=False)
    network_name = Column(String, nullable=False)

    type = Column(String, nullable=False, default="payment")
    category = Column(String, nullable=False, default="blockchain_transaction")
    status = Column(String, nullable=False, default="pending")  # pending, completed, failed

    from_user_id = Column(String, nullable=True)
    to_user_id = Column(String, nullable=True)
    from_address = Column(String, nullable=False)
    to_address = Column(String, nullable=False)
    amount = Column(String, nullable=False)
    token_address = Column(String, nullable=False, default="0x0")

    # "metadata" is reserved on declarative classes, so the attribute is renamed.
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", name="uq_transactions_tx_hash"),
        Index("idx_transactions_status_created", "status", "created_at"),
    )

    @property
    def is_pending(self) -> bool:
        """True until the hash has been observed on chain at least once."""
        return bool((self.meta or {}).get("is_pending", False))

    @property
    def blockchain_details(self) -> dict:
        return (self.meta or {}).get("blockchain_details") or {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tx_hash": self.tx_hash,
            "network_id": self.network_id,
            "network_name": self.network_name,
            "type": self.type,
            "category": self.category,
            "status": self.status,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "amount": self.amount,
            "token_address": self.token_address,
            "metadata": dict(self.meta or {}),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def __repr__(self):
        return f"<TransactionRecord(id={self.id}, tx_hash={self.tx_hash[:10]}..., status={self.status})>"


class User(Base):
    """Read-only view of platform users; profile management lives elsewhere."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String, nullable=True)
    primary_wallet_address = Column(String, nullable=True, index=True)
