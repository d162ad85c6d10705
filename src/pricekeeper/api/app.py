"""FastAPI application factory for the pipeline's HTTP trigger surface."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from pricekeeper.api import routes


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.

    Route handlers read their collaborators from app.state: ``scheduler``,
    ``prices``, ``reconciler`` and ``rates``. The entry point (or a test)
    sets them before serving requests.
    """
    app = FastAPI(
        title="Price Keeper",
        lifespan=lifespan,
    )

    app.state.scheduler = None
    app.state.prices = None
    app.state.reconciler = None
    app.state.rates = None

    app.include_router(routes.router, prefix="/api")

    return app
