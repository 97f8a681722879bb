"""
HTTP entry point for the Transaction Status Service.

Handlers are thin: they validate the body, hand off to
``TransactionStatusService`` and translate its result objects into status
codes. Caller identity arrives in ``X-User-Id``, set by the authenticating
gateway in front of this service.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response, status

from txstatus.config import get_settings
from txstatus.database import Base, SessionLocal, engine
from txstatus.log import configure_logging
from txstatus.polling import BackgroundTaskScheduler
from txstatus.schemas import (
    IntakeResult,
    ProcessTransactionRequest,
    StatusCheckResult,
    SupportedNetworksResponse,
    SweepReport,
    TransactionOut,
)
from txstatus.service import TransactionStatusService
from txstatus.store import TransactionStore, UserDirectory
from txstatus.web3_reader import Web3ChainReader

_service: Optional[TransactionStatusService] = None


def get_service() -> TransactionStatusService:
    """Build the process-wide service on first use and start its poller."""
    global _service
    if _service is None:
        settings = get_settings()
        configure_logging(settings)
        # In a production environment, we would use Alembic migrations instead of create_all.
        Base.metadata.create_all(bind=engine)

        scheduler = BackgroundTaskScheduler()
        scheduler.start()
        _service = TransactionStatusService(
            store=TransactionStore(SessionLocal),
            users=UserDirectory(SessionLocal),
            reader=Web3ChainReader(settings),
            scheduler=scheduler,
            settings=settings,
        )
    return _service


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _service is not None and isinstance(_service.scheduler, BackgroundTaskScheduler):
        _service.scheduler.shutdown()


app = FastAPI(title="Transaction Status Service", lifespan=lifespan)


@app.post("/transactions/process", response_model=IntakeResult, status_code=201)
def process_transaction(
    request: ProcessTransactionRequest,
    response: Response,
    x_user_id: str = Header(..., description="Authenticated user id"),
    service: TransactionStatusService = Depends(get_service),
):
    """
    Register a transaction hash for reconciliation.

    Returns 201 when a record was created and 200 when the hash was already
    known (the existing record id is returned). The record may still be
    pending; its final state is visible through the read endpoints.
    """
    result = service.process_transaction_hash(
        x_user_id, request.tx_hash, request.network_id, request.metadata
    )
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return result


@app.get("/transactions/networks", response_model=SupportedNetworksResponse)
def supported_networks(service: TransactionStatusService = Depends(get_service)):
    return SupportedNetworksResponse(networks=service.get_supported_networks())


@app.get("/transactions/status/{tx_hash}", response_model=StatusCheckResult)
def transaction_status(
    tx_hash: str,
    network_id: int = Query(1),
    retry: bool = Query(False),
    max_retries: Optional[int] = Query(None, ge=1, le=20),
    service: TransactionStatusService = Depends(get_service),
):
    if retry:
        return service.get_transaction_status_with_retry(tx_hash, network_id, max_retries)
    return service.check_transaction_status(tx_hash, network_id)


@app.post("/transactions/sweep", response_model=SweepReport)
def sweep_pending(
    dry_run: bool = Query(False),
    max_transactions: Optional[int] = Query(None, ge=1),
    service: TransactionStatusService = Depends(get_service),
):
    return service.sweep_pending_transactions(dry_run=dry_run, max_transactions=max_transactions)


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def transaction_detail(transaction_id: str, service: TransactionStatusService = Depends(get_service)):
    record = service.get_transaction(transaction_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return TransactionOut(**record.to_dict())


@app.get("/health")
def health_check():
    return {"status": "healthy"}
