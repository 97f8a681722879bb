from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from txstatus.models import TransactionRecord, User

logger = structlog.get_logger(__name__)


class TransactionStore:
    """
    Persistence for transaction records.

    Every call opens its own session, so the store can be shared between the
    request path and the poller thread. Returned records are detached
    snapshots; mutations go through ``update_if_pending``.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        with self._session_factory() as db:
            return db.get(TransactionRecord, transaction_id)

    def get_by_hash(self, tx_hash: str) -> Optional[TransactionRecord]:
        with self._session_factory() as db:
            return db.query(TransactionRecord).filter(TransactionRecord.tx_hash == tx_hash).first()

    def create(self, **values: Any) -> Tuple[TransactionRecord, bool]:
        """
        Insert a record, or return the one already holding its hash.

        Returns ``(record, created)``. Two intakes racing past the read-path
        duplicate check meet the unique constraint here; the loser rolls back
        and gets the winner's row.
        """
        record = TransactionRecord(**values)
        with self._session_factory() as db:
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = (
                    db.query(TransactionRecord)
                    .filter(TransactionRecord.tx_hash == values.get("tx_hash"))
                    .first()
                )
                if existing is None:
                    raise
                logger.info("Lost intake race, returning existing record", tx_hash=existing.tx_hash, transaction_id=existing.id)
                return existing, False
            db.refresh(record)
            return record, True

    def update_if_pending(self, transaction_id: str, values: Dict[str, Any], **expected: Any) -> bool:
        """
        Apply ``values`` only while the record is still pending.

        ``expected`` adds column equality conditions, e.g. the placeholder
        ``from_address`` that marks a record nobody has promoted yet.
        Returns False when another actor has already moved the record on (or
        it no longer exists); the caller must not retry.
        """
        values = dict(values)
        values.setdefault("updated_at", datetime.now(timezone.utc))
        conditions = [TransactionRecord.id == transaction_id, TransactionRecord.status == "pending"]
        conditions.extend(getattr(TransactionRecord, key) == value for key, value in expected.items())
        stmt = (
            update(TransactionRecord)
            .where(*conditions)
            .values({getattr(TransactionRecord, key): value for key, value in values.items()})
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1

    def list_pending(self, limit: Optional[int] = None) -> List[TransactionRecord]:
        with self._session_factory() as db:
            query = (
                db.query(TransactionRecord)
                .filter(TransactionRecord.status == "pending")
                .order_by(TransactionRecord.created_at)
            )
            if limit:
                query = query.limit(limit)
            return query.all()


class UserDirectory:
    """Wallet-address lookups against the users table."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def wallet_address_of(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        with self._session_factory() as db:
            user = db.get(User, user_id)
            return user.primary_wallet_address if user else None

    def find_by_address(self, address: Optional[str]) -> Optional[str]:
        if not address:
            return None
        with self._session_factory() as db:
            user = (
                db.query(User)
                .filter(func.lower(User.primary_wallet_address) == address.strip().lower())
                .first()
            )
            return user.id if user else None
