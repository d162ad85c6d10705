"""Background job scheduling and one-shot pipeline initialization.

SchedulerInitializer is an explicit context object owned by the entry point
and handed to whatever needs it (API routes, signal handlers). It brings the
pipeline online exactly once per process:

    store ping (bounded backoff) -> config validation -> history reconcile
    -> exchange rate priming -> initial price refresh -> periodic jobs

Concurrent initialize() callers share one in-flight sequence and observe its
outcome. A failed sequence leaves the phase at ERROR with the message
recorded; it never raises into the caller.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import aiosqlite
import structlog

from pricekeeper.config import AppSettings
from pricekeeper.data.database import PriceDatabase
from pricekeeper.data.reconciler import HistoricalReconciler
from pricekeeper.exceptions import (
    InvalidTransition,
    PartialFetchFailure,
    SchedulerNotReady,
    StoreUnavailableError,
    TransientUpstreamFailure,
)
from pricekeeper.logging import get_logger
from pricekeeper.market_data.exchange_rates import ExchangeRateCache
from pricekeeper.market_data.portfolio import PortfolioValuer
from pricekeeper.market_data.price_service import PriceService
from pricekeeper.models import PriceQuote, ReconcileResult, utc_now

logger = get_logger(__name__)


class SchedulerPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"
    RESTARTING = "restarting"


ALLOWED_TRANSITIONS: dict[SchedulerPhase, frozenset[SchedulerPhase]] = {
    SchedulerPhase.UNINITIALIZED: frozenset({SchedulerPhase.INITIALIZING}),
    SchedulerPhase.INITIALIZING: frozenset({SchedulerPhase.READY, SchedulerPhase.ERROR}),
    SchedulerPhase.READY: frozenset({SchedulerPhase.RESTARTING}),
    SchedulerPhase.ERROR: frozenset({SchedulerPhase.INITIALIZING, SchedulerPhase.RESTARTING}),
    SchedulerPhase.RESTARTING: frozenset({SchedulerPhase.INITIALIZING, SchedulerPhase.ERROR}),
}


def transition(current: SchedulerPhase, target: SchedulerPhase) -> SchedulerPhase:
    """Validate a phase change. Returns ``target`` or raises InvalidTransition."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"cannot move scheduler from {current.value} to {target.value}")
    return target


class PeriodicJob:
    """Runs an async body every ``interval`` seconds on one background task.

    Each tick runs inside a failure boundary: an exception is logged and
    kept as last_error, and the loop continues. stop() wakes a pending
    sleep immediately; a body already in flight is allowed to finish and
    its result is discarded.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        body: Callable[[], Awaitable[Any]],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.name = name
        self.interval = interval
        self._body = body
        self._clock = clock
        self._running = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self.last_run_at: datetime | None = None
        self.last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("job_already_running", job=self.name)
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"job:{self.name}")
        logger.info("job_started", job=self.name, interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("job_stopped", job=self.name)

    async def run_once(self) -> None:
        """Execute the body once inside the failure boundary."""
        with structlog.contextvars.bound_contextvars(job=self.name):
            try:
                await self._body()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e) or type(e).__name__
                logger.error("job_failed", error=self.last_error, exc_info=True)
            else:
                self.last_error = None
            finally:
                self.last_run_at = self._clock()

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break
            await self.run_once()

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


@dataclass
class SchedulerStatus:
    phase: SchedulerPhase
    last_run_at: datetime | None
    last_error: str | None
    jobs: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        return self.phase is SchedulerPhase.READY

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
            "jobs": self.jobs,
        }


class SchedulerInitializer:
    """Owns the scheduler phase and the periodic jobs.

    Args:
        settings: Application settings (validated during initialization).
        database: Connection manager pinged before anything else runs.
        reconciler: Daily history reconciliation.
        prices: Current price read model.
        rates: Exchange rate cache.
        portfolio: Portfolio valuation run after each live price refresh.
        clock: Current-time provider (injectable for tests).
    """

    def __init__(
        self,
        settings: AppSettings,
        database: PriceDatabase,
        reconciler: HistoricalReconciler,
        prices: PriceService,
        rates: ExchangeRateCache,
        portfolio: PortfolioValuer,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._database = database
        self._reconciler = reconciler
        self._prices = prices
        self._rates = rates
        self._portfolio = portfolio
        self._clock = clock

        self._phase = SchedulerPhase.UNINITIALIZED
        self._last_run_at: datetime | None = None
        self._last_error: str | None = None
        self._init_task: asyncio.Task | None = None  # type: ignore[type-arg]

        self._jobs = [
            PeriodicJob(
                "live_price",
                settings.price.refresh_interval_seconds,
                self._live_price_tick,
                clock=clock,
            ),
            PeriodicJob(
                "historical",
                settings.historical.reconcile_interval_seconds,
                self._historical_tick,
                clock=clock,
            ),
            PeriodicJob(
                "exchange_rates",
                settings.fx.ttl_hours * 3600,
                self._rates.refresh_all,
                clock=clock,
            ),
        ]

    @property
    def phase(self) -> SchedulerPhase:
        return self._phase

    @property
    def jobs(self) -> list[PeriodicJob]:
        return list(self._jobs)

    async def initialize(self) -> SchedulerStatus:
        """Bring the pipeline online. No-op when READY or already initializing."""
        if self._phase is SchedulerPhase.READY:
            return self.get_status()
        return await self._join_initialization()

    async def restart(self) -> SchedulerStatus:
        """Stop every job and re-run the full initialization sequence."""
        if self._init_task is not None and not self._init_task.done():
            return await self._join_initialization()
        if self._phase is SchedulerPhase.UNINITIALIZED:
            return await self.initialize()

        logger.info("scheduler_restarting", previous_phase=self._phase.value)
        # The sequence stops the jobs itself. Setting RESTARTING and creating
        # the task without an await in between lets overlapping restarts join.
        self._set_phase(SchedulerPhase.RESTARTING)
        return await self._join_initialization()

    async def trigger_data_update(self) -> tuple[ReconcileResult, PriceQuote]:
        """Run a reconciliation pass and a manual price refresh now.

        Raises SchedulerNotReady unless the phase is READY. An unavailable
        price source degrades to get_current_price() rather than failing.
        """
        if self._phase is not SchedulerPhase.READY:
            raise SchedulerNotReady(f"scheduler is {self._phase.value}, not ready")

        result = await self._reconciler.run()
        try:
            quote = await self._prices.manual_refresh()
        except TransientUpstreamFailure as e:
            logger.warning("manual_price_refresh_failed", error=str(e))
            quote = await self._prices.get_current_price()
        self._last_run_at = self._clock()
        return result, quote

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            phase=self._phase,
            last_run_at=self._last_run_at,
            last_error=self._last_error,
            jobs={job.name: job.status() for job in self._jobs},
        )

    async def shutdown(self) -> None:
        """Cancel any in-flight initialization and stop every job."""
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            try:
                await self._init_task
            except asyncio.CancelledError:
                pass
            # A task cancelled before its first step never left RESTARTING
            if self._phase is SchedulerPhase.RESTARTING:
                self._last_error = "initialization cancelled by shutdown"
                self._set_phase(SchedulerPhase.ERROR)
        await self._stop_jobs()
        logger.info("scheduler_shutdown", phase=self._phase.value)

    # ──────────────────────────────────────────────
    # Initialization sequence
    # ──────────────────────────────────────────────

    async def _join_initialization(self) -> SchedulerStatus:
        # No await between the check and create_task, so only one caller
        # can start the sequence; everyone else joins it.
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.create_task(
                self._run_initialization(), name="scheduler:initialize"
            )
        task = self._init_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # Only a shutdown cancels the sequence itself; a cancelled caller re-raises
            if not task.cancelled():
                raise
        return self.get_status()

    async def _run_initialization(self) -> None:
        self._set_phase(SchedulerPhase.INITIALIZING)
        logger.info("scheduler_initializing")
        try:
            await self._stop_jobs()
            await self._wait_for_store()
            self._settings.validate_required()

            result = await self._reconciler.run()
            logger.info(
                "initial_reconcile_done",
                records_added=result.records_added,
                gaps_after=result.gaps_after,
                success=result.success,
            )

            await self._rates.prime()
            await self._initial_price_refresh()

            for job in self._jobs:
                await job.start()
        except asyncio.CancelledError:
            self._last_error = "initialization cancelled by shutdown"
            self._set_phase(SchedulerPhase.ERROR)
            raise
        except Exception as e:
            self._last_error = str(e) or type(e).__name__
            self._set_phase(SchedulerPhase.ERROR)
            logger.error("scheduler_initialization_failed", error=self._last_error, exc_info=True)
            await self._stop_jobs()
            return

        self._last_error = None
        self._last_run_at = self._clock()
        self._set_phase(SchedulerPhase.READY)
        logger.info("scheduler_ready", jobs=[job.name for job in self._jobs])

    async def _wait_for_store(self) -> None:
        """Ping the store with capped exponential backoff.

        Raises StoreUnavailableError once connect_max_attempts is spent.
        """
        settings = self._settings.scheduler
        attempts = max(1, settings.connect_max_attempts)

        for attempt in range(attempts):
            try:
                await self._database.ping()
                return
            except (aiosqlite.Error, OSError) as e:
                if attempt == attempts - 1:
                    raise StoreUnavailableError(
                        f"store unreachable after {attempts} attempts: {e}"
                    ) from e
                delay = min(settings.connect_base_delay * (2**attempt), settings.connect_max_delay)
                logger.warning(
                    "store_ping_retry",
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    async def _initial_price_refresh(self) -> None:
        try:
            quote = await self._prices.refresh()
            await self._portfolio.calculate_and_store_portfolio_summary(quote.price)
        except TransientUpstreamFailure as e:
            logger.warning("initial_price_refresh_failed", error=str(e))

    # ──────────────────────────────────────────────
    # Job bodies
    # ──────────────────────────────────────────────

    async def _live_price_tick(self) -> None:
        quote = await self._prices.refresh_intraday()
        await self._portfolio.calculate_and_store_portfolio_summary(quote.price)

    async def _historical_tick(self) -> None:
        result = await self._reconciler.run()
        await self._reconciler.cleanup_old_data()
        # Partial failures surface as the job's last_error
        if result.failed_chunks:
            raise PartialFetchFailure(result.failed_chunks)

    async def _stop_jobs(self) -> None:
        for job in self._jobs:
            if job.is_running:
                await job.stop()

    def _set_phase(self, target: SchedulerPhase) -> None:
        self._phase = transition(self._phase, target)
