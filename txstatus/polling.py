"""
Polling primitives for transaction reconciliation.

Each polling phase is a pure step function over an explicit ``PollState``:
given the state and what the chain reader just answered, it decides whether
to stop (observed, confirmed, failed, gave up) or retry with the next state.
The engine owns side effects; this module owns the decisions and the
deferred task queue the continuations run on.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

import pytz
import structlog
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from txstatus.chain_reader import ChainLookup, TransactionEnvelope

logger = structlog.get_logger(__name__)

NOT_FOUND_REASON = "Transaction not found on blockchain after maximum retries"
NOT_CONFIRMED_REASON = "Transaction not confirmed after maximum retries"
CHAIN_FAILED_REASON = "Transaction failed on chain"

PollResult = Union[ChainLookup, Exception]


@dataclass(frozen=True)
class PollState:
    attempt: int = 0
    max_attempts: int = 10
    delay: float = 2.0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next(self) -> "PollState":
        return replace(self, attempt=self.attempt + 1)


@dataclass(frozen=True)
class Retry:
    state: PollState
    envelope: Optional[TransactionEnvelope] = None


@dataclass(frozen=True)
class Observed:
    envelope: TransactionEnvelope


@dataclass(frozen=True)
class Confirmed:
    envelope: TransactionEnvelope


@dataclass(frozen=True)
class ChainFailed:
    envelope: TransactionEnvelope
    reason: str = CHAIN_FAILED_REASON


@dataclass(frozen=True)
class GiveUp:
    reason: str
    envelope: Optional[TransactionEnvelope] = None


def is_confirmed(envelope: TransactionEnvelope, threshold: int) -> bool:
    return envelope.block_number is not None and envelope.confirmations >= threshold


def discovery_step(state: PollState, result: PollResult) -> Union[Observed, Retry, GiveUp]:
    """One discovery tick: has the hash shown up on chain yet?"""
    if isinstance(result, TransactionEnvelope):
        return Observed(result)

    nxt = state.next()
    if nxt.exhausted:
        return GiveUp(NOT_FOUND_REASON)
    return Retry(nxt)


def confirmation_step(
    state: PollState, result: PollResult, threshold: int
) -> Union[Confirmed, ChainFailed, Retry, GiveUp]:
    """One confirmation tick for a transaction already observed on chain."""
    envelope = result if isinstance(result, TransactionEnvelope) else None

    if envelope is not None:
        if envelope.status == "failed":
            return ChainFailed(envelope)
        if is_confirmed(envelope, threshold):
            return Confirmed(envelope)

    nxt = state.next()
    if nxt.exhausted:
        reason = NOT_CONFIRMED_REASON if envelope is not None else NOT_FOUND_REASON
        if isinstance(result, Exception):
            reason = f"Status monitoring failed after maximum retries: {result}"
        return GiveUp(reason, envelope)
    return Retry(nxt, envelope)


class TaskScheduler(ABC):
    @abstractmethod
    def schedule(self, delay: float, fn: Callable[..., Any], *args: Any) -> None:
        """Run ``fn(*args)`` once, no sooner than ``delay`` seconds from now."""


def _run_task(fn: Callable[..., Any], *args: Any) -> None:
    try:
        fn(*args)
    except Exception:
        logger.exception("Scheduled task failed", task=getattr(fn, "__qualname__", repr(fn)))


class BackgroundTaskScheduler(TaskScheduler):
    """
    Fire-and-forget continuations on an APScheduler ``BackgroundScheduler``.

    Each continuation is a one-shot ``date`` job. The single-worker executor
    runs them one at a time, and late jobs still run: a skipped misfire would
    leave a pending record with no polling chain.
    """

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self._scheduler = scheduler or BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers=1)},
            job_defaults={"coalesce": False, "misfire_grace_time": None},
            timezone=pytz.UTC,
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def schedule(self, delay: float, fn: Callable[..., Any], *args: Any) -> None:
        run_date = datetime.now(pytz.UTC) + timedelta(seconds=max(0.0, delay))
        self._scheduler.add_job(_run_task, "date", run_date=run_date, args=(fn, *args))

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
