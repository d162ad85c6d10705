"""Entry point for the price data pipeline.

Wires all components together and runs the scheduler, optionally behind the
FastAPI trigger surface. When the API is enabled (default), the scheduler
and the HTTP server share a single asyncio event loop via uvicorn's
programmatic API and FastAPI's lifespan context manager.

Component wiring order (in _build_components):
1. PriceDatabase / PriceStore (persistence)
2. CcxtMarketDataClient (market data source)
3. HttpExchangeRateSource / ExchangeRateCache (currency conversion)
4. PortfolioValuer (holdings valuation)
5. PriceService (current price read model)
6. HistoricalReconciler (daily history gap filling)
7. SchedulerInitializer (initialization and periodic jobs)
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from pricekeeper.config import AppSettings
from pricekeeper.data.database import PriceDatabase
from pricekeeper.data.reconciler import HistoricalReconciler
from pricekeeper.data.store import PriceStore
from pricekeeper.exceptions import TransientUpstreamFailure
from pricekeeper.exchange.ccxt_client import CcxtMarketDataClient
from pricekeeper.exchange.rate_source import HttpExchangeRateSource
from pricekeeper.logging import get_logger, setup_logging
from pricekeeper.market_data.exchange_rates import ExchangeRateCache
from pricekeeper.market_data.portfolio import PortfolioValuer
from pricekeeper.market_data.price_service import PriceService
from pricekeeper.scheduler import SchedulerInitializer


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build the full dependency graph from settings.

    Note: Does NOT connect anything -- the market data client is connected
    in the lifespan (API mode) or run() (headless mode), and the database
    is opened by the scheduler's store ping.
    """
    database = PriceDatabase(settings.historical.db_path)
    store = PriceStore(database)
    client = CcxtMarketDataClient(settings.market)
    rates = ExchangeRateCache(HttpExchangeRateSource(settings.fx), settings.fx)
    portfolio = PortfolioValuer(store, rates, settings.portfolio)
    prices = PriceService(client, store, settings.price, portfolio=portfolio)
    reconciler = HistoricalReconciler(
        client,
        store,
        settings.historical,
        overlap_days=settings.market.chunk_overlap_days,
    )
    scheduler = SchedulerInitializer(
        settings, database, reconciler, prices, rates, portfolio
    )

    return {
        "database": database,
        "store": store,
        "client": client,
        "rates": rates,
        "portfolio": portfolio,
        "prices": prices,
        "reconciler": reconciler,
        "scheduler": scheduler,
    }


async def _start(components: dict[str, Any]) -> None:
    """Connect the market data client and initialize the scheduler.

    Initialization failures leave the scheduler in the ERROR phase with the
    message recorded; the process keeps running so it can be restarted.
    An unreachable exchange is logged and tolerated: ccxt loads markets
    again on the first fetch, and the price service degrades meanwhile.
    """
    logger = get_logger("pricekeeper.main")
    try:
        await components["client"].connect()
    except TransientUpstreamFailure as e:
        logger.warning("exchange_connect_failed", error=str(e))
    status = await components["scheduler"].initialize()
    if not status.is_ready:
        logger.error(
            "startup_initialization_failed",
            phase=status.phase.value,
            error=status.last_error,
        )


async def _stop(components: dict[str, Any]) -> None:
    await components["scheduler"].shutdown()
    await components["client"].close()
    await components["database"].close()
    get_logger("pricekeeper.main").info("pricekeeper_stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage pipeline lifecycle within the FastAPI application.

    On startup: stores components on app.state, connects the market data
    client and runs scheduler initialization.

    On shutdown: stops the scheduler jobs, closes the client and the database.
    """
    components = app.state.components

    # Store components on app.state for route handler access
    app.state.scheduler = components["scheduler"]
    app.state.prices = components["prices"]
    app.state.reconciler = components["reconciler"]
    app.state.rates = components["rates"]

    await _start(components)
    get_logger("pricekeeper.main").info(
        "lifespan_started", phase=components["scheduler"].phase.value
    )

    yield

    await _stop(components)


async def _run_headless(components: dict[str, Any]) -> None:
    """Run the scheduler without a web server until SIGINT/SIGTERM."""
    logger = get_logger("pricekeeper.main")
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)

    try:
        await _start(components)
        await stop_event.wait()
    finally:
        await _stop(components)


async def run() -> None:
    """Run the price data pipeline.

    When the API is enabled (API_ENABLED=true, the default):
    - Creates the FastAPI app with lifespan
    - Runs the scheduler and HTTP server in a single asyncio event loop via uvicorn

    When the API is disabled (API_ENABLED=false):
    - Runs the scheduler directly until SIGINT/SIGTERM
    """
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(
        settings.log_level,
        exchange=settings.market.exchange_id,
        symbol=settings.market.symbol,
    )
    logger = get_logger("pricekeeper.main")

    # 3. Build all components
    components = _build_components(settings)

    if settings.api.enabled:
        from pricekeeper.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        logger.info(
            "starting_without_api",
            period=settings.historical.period,
        )
        await _run_headless(components)


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
