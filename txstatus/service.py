"""
Transaction reconciliation engine.

A client hands us a transaction hash it submitted elsewhere. We look it up
once on the request path, persist a record, and then converge that record
to ``completed`` or ``failed`` by polling the chain reader on deferred
tasks. Nothing here subscribes to chain events.

Record lifecycle (``status`` / ``metadata.is_pending``)::

    UNSEEN            pending / True    hash not yet returned by the reader
    OBSERVED-PENDING  pending / False   envelope known, awaiting confirmations
    COMPLETED         completed         confirmation threshold reached
    FAILED            failed            chain failure or retry budget spent

Each record has at most one live polling chain: it is scheduled once at
intake and handed from discovery to confirmation exactly once. Every
polling write is conditional on the record still being pending, so a record
another actor has finalised is never overwritten.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from txstatus import networks
from txstatus.chain_reader import ChainReader, NotFound, TransactionEnvelope
from txstatus.config import Settings
from txstatus.counterparty import Role, resolve_counterparties
from txstatus.networks import UnsupportedNetwork
from txstatus.polling import (
    CHAIN_FAILED_REASON,
    ChainFailed,
    Confirmed,
    GiveUp,
    Observed,
    PollResult,
    PollState,
    Retry,
    TaskScheduler,
    confirmation_step,
    discovery_step,
    is_confirmed,
)
from txstatus.schemas import (
    IntakeResult,
    NetworkSweepStats,
    StatusCheckResult,
    SweepError,
    SweepReport,
    is_valid_tx_hash,
)
from txstatus.store import TransactionStore, UserDirectory

logger = structlog.get_logger(__name__)

PLACEHOLDER_ADDRESS = "pending"
PENDING_MESSAGE = "Transaction submitted to blockchain. Status will be updated when mined."
EXPIRED_REASON = "Transaction not found on blockchain before pending record expired"
MONITORING_FAILED_REASON = "Status monitoring failed after maximum retries"


def map_chain_status(chain_status: Optional[str]) -> str:
    """Collapse a chain-reported status into the record's coarse status."""
    if chain_status == "confirmed":
        return "completed"
    if chain_status == "failed":
        return "failed"
    return "pending"


class TransactionStatusService:
    def __init__(
        self,
        store: TransactionStore,
        users: UserDirectory,
        reader: ChainReader,
        scheduler: TaskScheduler,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.users = users
        self.reader = reader
        self.scheduler = scheduler
        self.settings = settings or Settings()
        self._sleep = sleep

    # Intake

    def process_transaction_hash(
        self,
        user_id: str,
        tx_hash: str,
        network_id: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IntakeResult:
        """
        Register a client-submitted hash and start converging its record.

        Validation happens before any chain query or write. Re-submitting a
        known hash returns the existing record id. The reader is queried once;
        if the hash is not visible yet an UNSEEN record is created and
        discovery polling takes over, so the caller never waits on the chain.
        """
        metadata = dict(metadata or {})

        if not networks.is_supported(network_id):
            return IntakeResult(success=False, error=str(UnsupportedNetwork(network_id)))
        network = networks.resolve(network_id)

        if not is_valid_tx_hash(tx_hash):
            return IntakeResult(success=False, error=f"Invalid transaction hash: {tx_hash!r}")
        tx_hash = tx_hash.lower()

        try:
            existing = self.store.get_by_hash(tx_hash)
            if existing is not None:
                logger.info("Transaction already exists", tx_hash=tx_hash, transaction_id=existing.id)
                return IntakeResult(success=True, transaction_id=existing.id)

            result = self._query(network, tx_hash)

            if not isinstance(result, TransactionEnvelope):
                return self._create_unseen(user_id, tx_hash, network_id, network, metadata)
            return self._create_observed(user_id, tx_hash, network_id, network, result, metadata)
        except Exception as e:
            logger.error(
                "Error processing transaction hash",
                tx_hash=tx_hash,
                user_id=user_id,
                network_id=network_id,
                error=str(e),
                exc_info=True,
            )
            return IntakeResult(success=False, error=str(e) or "Failed to process transaction")

    def _base_values(self, tx_hash, network_id, network, metadata) -> Dict[str, Any]:
        return {
            "tx_hash": tx_hash,
            "network_id": network_id,
            "network_name": network,
            "type": metadata.get("type", "payment"),
            "category": metadata.get("category", "blockchain_transaction"),
            "status": "pending",
        }

    def _create_unseen(self, user_id, tx_hash, network_id, network, metadata) -> IntakeResult:
        logger.info("Transaction not found immediately, creating pending record",
                    tx_hash=tx_hash, network=network, user_id=user_id)

        values = self._base_values(tx_hash, network_id, network, metadata)
        values.update(
            from_user_id=None,
            to_user_id=user_id,
            from_address=PLACEHOLDER_ADDRESS,
            to_address=PLACEHOLDER_ADDRESS,
            amount="0",
            token_address=metadata.get("token_address") or "0x0",
            meta={
                **metadata,
                "is_pending": True,
                "submitted_by": user_id,
                "network_id": network_id,
                "network_name": network,
            },
        )
        record, created = self.store.create(**values)
        if not created:
            return IntakeResult(success=True, transaction_id=record.id)

        self.scheduler.schedule(
            self.settings.poll_interval,
            self._poll_discovery,
            record.id,
            PollState(max_attempts=self.settings.discovery_max_retries, delay=self.settings.poll_interval),
        )
        return IntakeResult(success=True, transaction_id=record.id, created=True, message=PENDING_MESSAGE)

    def _create_observed(self, user_id, tx_hash, network_id, network, envelope, metadata) -> IntakeResult:
        resolved, role = self._resolve(user_id, envelope, metadata)

        values = self._base_values(tx_hash, network_id, network, metadata)
        values.update(resolved)
        values["meta"] = {
            **metadata,
            "is_pending": False,
            "submitted_by": user_id,
            "user_role": role.value,
            "network_id": network_id,
            "network_name": network,
            "blockchain_details": envelope.details(),
        }

        logger.info(
            "Creating transaction record",
            tx_hash=tx_hash,
            user_id=user_id,
            user_role=role.value,
            from_address=values["from_address"],
            to_address=values["to_address"],
            is_erc20_transfer=envelope.is_erc20_transfer,
            token_address=values["token_address"],
            network=network,
        )

        record, created = self.store.create(**values)
        if not created:
            return IntakeResult(success=True, transaction_id=record.id)

        self._start_confirmation(record.id)
        return IntakeResult(success=True, transaction_id=record.id, created=True)

    # Resolution

    def _resolve(self, user_id: str, envelope: TransactionEnvelope, metadata: Dict[str, Any]) -> Tuple[Dict[str, Any], Role]:
        """Effective transfer fields plus counterparty ids for an observed envelope."""
        from_address = envelope.effective_from_address
        to_address = envelope.effective_to_address

        parties = resolve_counterparties(
            user_id,
            self.users.wallet_address_of(user_id),
            from_address,
            to_address,
            self.users.find_by_address,
        )
        return {
            "from_user_id": parties.from_user_id,
            "to_user_id": parties.to_user_id,
            "from_address": from_address,
            "to_address": to_address,
            "amount": envelope.effective_amount,
            "token_address": envelope.effective_token_address(metadata.get("token_address")),
        }, parties.role

    def _refresh(self, record, envelope: TransactionEnvelope) -> Dict[str, Any]:
        """Values re-derived on every successful confirmation poll."""
        values: Dict[str, Any] = {
            "meta": {**(record.meta or {}), "blockchain_details": envelope.details()},
        }
        if envelope.decoded:
            values.update(
                from_address=envelope.effective_from_address,
                to_address=envelope.effective_to_address,
                amount=envelope.effective_amount,
                token_address=envelope.effective_token_address(record.token_address),
            )
        return values

    # Polling

    def _query(self, network: str, tx_hash: str) -> PollResult:
        try:
            return self.reader.get_transaction_details(network, tx_hash)
        except Exception as e:
            logger.warning("Chain reader error", network=network, tx_hash=tx_hash, error=str(e))
            return e

    def _start_confirmation(self, transaction_id: str) -> None:
        self.scheduler.schedule(
            self.settings.poll_interval,
            self._poll_confirmation,
            transaction_id,
            PollState(max_attempts=self.settings.confirmation_max_retries, delay=self.settings.poll_interval),
        )

    def _poll_discovery(self, transaction_id: str, state: PollState) -> None:
        try:
            record = self.store.get(transaction_id)
            if record is None:
                logger.warning("Pending transaction not found during monitoring", transaction_id=transaction_id)
                return
            if record.status != "pending" or not record.is_pending:
                logger.info("Discovery stopped, record already moved on",
                            transaction_id=transaction_id, status=record.status)
                return

            outcome = discovery_step(state, self._query(record.network_name, record.tx_hash))

            if isinstance(outcome, Observed):
                meta = dict(record.meta or {})
                user_id = meta.get("submitted_by") or record.to_user_id
                values, role = self._resolve(user_id, outcome.envelope, meta)
                meta.update(
                    is_pending=False,
                    user_role=role.value,
                    blockchain_details=outcome.envelope.details(),
                )
                values["meta"] = meta

                if not self.store.update_if_pending(transaction_id, values, from_address=PLACEHOLDER_ADDRESS):
                    logger.info("Record transitioned elsewhere, stopping", transaction_id=transaction_id)
                    return
                logger.info("Pending transaction found on blockchain",
                            transaction_id=transaction_id, tx_hash=record.tx_hash,
                            attempt=state.attempt + 1, user_role=role.value)
                self._start_confirmation(transaction_id)
            elif isinstance(outcome, Retry):
                self.scheduler.schedule(outcome.state.delay, self._poll_discovery, transaction_id, outcome.state)
            else:
                self._fail(transaction_id, outcome.reason, attempt=state.attempt + 1)
        except Exception as e:
            logger.error("Error monitoring pending transaction", transaction_id=transaction_id,
                         attempt=state.attempt + 1, error=str(e), exc_info=True)
            self._retry_or_fail(self._poll_discovery, transaction_id, state)

    def _poll_confirmation(self, transaction_id: str, state: PollState) -> None:
        try:
            record = self.store.get(transaction_id)
            if record is None:
                logger.warning("Transaction not found during status monitoring", transaction_id=transaction_id)
                return
            if record.status != "pending":
                logger.info("Confirmation stopped, record already terminal",
                            transaction_id=transaction_id, status=record.status)
                return

            threshold = self.settings.threshold_for(record.network_name)
            outcome = confirmation_step(state, self._query(record.network_name, record.tx_hash), threshold)

            envelope = getattr(outcome, "envelope", None)
            values = self._refresh(record, envelope) if envelope is not None else {}

            if isinstance(outcome, Confirmed):
                values["status"] = "completed"
            elif isinstance(outcome, (ChainFailed, GiveUp)):
                values["status"] = "failed"
                values.setdefault("meta", dict(record.meta or {}))["error"] = outcome.reason

            if values and not self.store.update_if_pending(transaction_id, values):
                logger.info("Record transitioned elsewhere, stopping", transaction_id=transaction_id)
                return

            if isinstance(outcome, Retry):
                self.scheduler.schedule(outcome.state.delay, self._poll_confirmation, transaction_id, outcome.state)
                return

            logger.info(
                "Transaction status updated",
                transaction_id=transaction_id,
                tx_hash=record.tx_hash,
                status=values["status"],
                confirmations=envelope.confirmations if envelope else None,
                error=getattr(outcome, "reason", None),
            )
        except Exception as e:
            logger.error("Error monitoring transaction status", transaction_id=transaction_id,
                         attempt=state.attempt + 1, error=str(e), exc_info=True)
            self._retry_or_fail(self._poll_confirmation, transaction_id, state)

    def _retry_or_fail(self, poll, transaction_id: str, state: PollState) -> None:
        nxt = state.next()
        if nxt.exhausted:
            self._fail(transaction_id, MONITORING_FAILED_REASON, attempt=nxt.attempt)
        else:
            self.scheduler.schedule(nxt.delay, poll, transaction_id, nxt)

    def _fail(self, transaction_id: str, reason: str, attempt: Optional[int] = None) -> None:
        try:
            record = self.store.get(transaction_id)
            if record is None:
                return
            meta = {**(record.meta or {}), "error": reason}
            if self.store.update_if_pending(transaction_id, {"status": "failed", "meta": meta}):
                logger.info("Transaction marked failed", transaction_id=transaction_id,
                            tx_hash=record.tx_hash, attempt=attempt, error=reason)
        except Exception as e:
            logger.error("Error updating transaction status", transaction_id=transaction_id,
                         status="failed", error=str(e), exc_info=True)

    # Direct status checks

    def check_transaction_status(self, tx_hash: str, network_id: int = 1) -> StatusCheckResult:
        """Read-through status lookup; never touches stored records."""
        if not networks.is_supported(network_id):
            return StatusCheckResult(is_confirmed=False, status="pending", confirmations=0,
                                     error=str(UnsupportedNetwork(network_id)))
        if not is_valid_tx_hash(tx_hash):
            return StatusCheckResult(is_confirmed=False, status="pending", confirmations=0,
                                     error=f"Invalid transaction hash: {tx_hash!r}")
        network = networks.resolve(network_id)

        result = self._query(network, tx_hash.lower())
        if isinstance(result, Exception):
            return StatusCheckResult(is_confirmed=False, status="pending", confirmations=0,
                                     error="Failed to check status")
        if isinstance(result, NotFound):
            return StatusCheckResult(is_confirmed=False, status="pending", confirmations=0,
                                     error="Transaction not found")

        return StatusCheckResult(
            is_confirmed=is_confirmed(result, self.settings.threshold_for(network)),
            status=map_chain_status(result.status),
            confirmations=result.confirmations or 0,
            block_number=result.block_number,
        )

    def get_transaction_status_with_retry(
        self, tx_hash: str, network_id: int = 1, max_retries: Optional[int] = None
    ) -> StatusCheckResult:
        attempts = max(1, max_retries or self.settings.status_check_max_retries)
        result = None
        for i in range(attempts):
            result = self.check_transaction_status(tx_hash, network_id)
            if result.is_confirmed or result.status == "failed":
                return result
            if i < attempts - 1:
                self._sleep(self.settings.poll_interval)
        return result

    def get_supported_networks(self):
        return self.reader.get_supported_networks()

    def get_transaction(self, transaction_id: str):
        return self.store.get(transaction_id)

    # Sweep

    def sweep_pending_transactions(self, dry_run: bool = False, max_transactions: Optional[int] = None) -> SweepReport:
        """
        Re-check every pending record once and settle what can be settled.

        Covers records whose polling chain was lost, e.g. across a restart.
        Observed and confirmed records are fixed, chain failures and records
        unseen for longer than ``pending_max_age`` are failed, the rest are
        left pending. A record seen on chain for the first time here gets its
        confirmation chain from the sweep. With ``dry_run`` nothing is written.
        """
        started = time.monotonic()
        report = SweepReport(dry_run=dry_run)
        now = datetime.now(timezone.utc)

        for record in self.store.list_pending(max_transactions or self.settings.sweep_batch_size):
            stats = report.networks.setdefault(record.network_name, NetworkSweepStats())
            stats.total += 1
            report.total += 1

            result = self._query(record.network_name, record.tx_hash)
            if isinstance(result, Exception):
                stats.errors += 1
                report.errors += 1
                report.error_details.append(
                    SweepError(transaction_id=record.id, tx_hash=record.tx_hash, error=str(result))
                )
                continue

            values, outcome = self._sweep_values(record, result, now)
            if outcome == "fixed":
                stats.fixed += 1
                report.fixed += 1
            elif outcome == "failed":
                stats.failed += 1
                report.failed += 1
            else:
                stats.skipped += 1
                report.skipped += 1

            if values and not dry_run:
                self._apply_sweep(record, result, values)

        report.duration = time.monotonic() - started
        logger.info("Pending transaction sweep completed", dry_run=dry_run, total=report.total,
                    fixed=report.fixed, failed=report.failed, skipped=report.skipped,
                    errors=report.errors, duration=report.duration)
        return report

    def _apply_sweep(self, record, result, values) -> None:
        if not (record.is_pending and isinstance(result, TransactionEnvelope)):
            self.store.update_if_pending(record.id, values)
            return

        # Promotion out of UNSEEN: the queued discovery tick will stop, so
        # whoever wins the promotion owns the confirmation chain.
        if not self.store.update_if_pending(record.id, values, from_address=PLACEHOLDER_ADDRESS):
            logger.info("Record promoted elsewhere during sweep", transaction_id=record.id)
            return
        if "status" not in values:
            self._start_confirmation(record.id)

    def _sweep_values(self, record, result, now) -> Tuple[Dict[str, Any], str]:
        meta = dict(record.meta or {})

        if isinstance(result, NotFound):
            created_at = record.created_at
            if created_at is not None and created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            age = (now - created_at).total_seconds() if created_at else 0.0
            if age > self.settings.pending_max_age:
                meta["error"] = EXPIRED_REASON
                return {"status": "failed", "meta": meta}, "failed"
            return {}, "skipped"

        if record.is_pending:
            user_id = meta.get("submitted_by") or record.to_user_id
            values, role = self._resolve(user_id, result, meta)
            meta.update(is_pending=False, user_role=role.value, blockchain_details=result.details())
            values["meta"] = meta
        else:
            values = self._refresh(record, result)
            meta = values["meta"]

        if result.status == "failed":
            meta["error"] = CHAIN_FAILED_REASON
            values["status"] = "failed"
            return values, "failed"
        if is_confirmed(result, self.settings.threshold_for(record.network_name)):
            values["status"] = "completed"
            return values, "fixed"
        return values, "skipped"
