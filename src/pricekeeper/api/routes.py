"""JSON endpoints that call core pipeline operations.

Every response body is an OperationResult: {"success", "message", "data"}.
Expected failures (bad input, scheduler not ready, upstream down) map to a
non-2xx status with success=false instead of an unhandled exception.
"""

from __future__ import annotations

import dataclasses
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from pricekeeper.exceptions import (
    InvalidTransition,
    SchedulerNotReady,
    TransientUpstreamFailure,
    ValidationError,
)
from pricekeeper.models import OperationResult

log = structlog.get_logger(__name__)

router = APIRouter()


def _to_jsonable(obj: Any) -> Any:
    """Recursively convert Decimals, dates, enums and dataclasses for JSON."""
    if hasattr(obj, "to_dict"):
        return _to_jsonable(obj.to_dict())
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _to_jsonable(dataclasses.asdict(obj))
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {k: _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(item) for item in obj]
    return obj


def _respond(result: OperationResult, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=_to_jsonable(result), status_code=status_code)


def _ok(message: str, data: Any = None) -> JSONResponse:
    return _respond(OperationResult(success=True, message=message, data=data))


def _fail(message: str, status_code: int) -> JSONResponse:
    return _respond(OperationResult(success=False, message=message), status_code)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


# ──────────────────────────────────────────────
# Scheduler
# ──────────────────────────────────────────────


@router.get("/system/scheduler")
async def get_scheduler_status(request: Request) -> JSONResponse:
    status = request.app.state.scheduler.get_status()
    return _ok(f"Scheduler is {status.phase.value}", status)


@router.post("/system/scheduler")
async def control_scheduler(request: Request) -> JSONResponse:
    """Body: {"action": "restart" | "trigger"}."""
    scheduler = request.app.state.scheduler
    try:
        action = (await _json_body(request)).get("action")
        if action == "restart":
            status = await scheduler.restart()
            log.info("scheduler_restarted_via_api", phase=status.phase.value)
            return _respond(
                OperationResult(
                    success=status.is_ready,
                    message=f"Scheduler restarted: {status.phase.value}",
                    data=status,
                ),
                200 if status.is_ready else 500,
            )
        if action == "trigger":
            result, quote = await scheduler.trigger_data_update()
            return _ok(
                "Data update triggered",
                {"reconcile": result, "price": quote},
            )
        raise ValidationError(f"Unknown action {action!r}; expected 'restart' or 'trigger'")
    except ValidationError as e:
        return _fail(str(e), 400)
    except (SchedulerNotReady, InvalidTransition) as e:
        return _fail(str(e), 409)


# ──────────────────────────────────────────────
# Price
# ──────────────────────────────────────────────


@router.get("/price")
async def get_price(request: Request) -> JSONResponse:
    quote = await request.app.state.prices.get_current_price()
    return _ok(f"Price from {quote.source.value}", quote)


@router.post("/price/refresh")
async def refresh_price(request: Request) -> JSONResponse:
    try:
        quote = await request.app.state.prices.manual_refresh()
    except TransientUpstreamFailure as e:
        log.warning("price_refresh_failed_via_api", error=str(e))
        return _fail(f"Price source unavailable: {e}", 503)
    return _ok("Price refreshed", quote)


@router.get("/price/hourly")
async def get_hourly_candles(request: Request, hours: int = 24) -> JSONResponse:
    try:
        candles = await request.app.state.prices.get_hourly_candles(hours)
    except ValidationError as e:
        return _fail(str(e), 400)
    return _ok(f"{len(candles)} hourly candles", candles)


# ──────────────────────────────────────────────
# Historical data
# ──────────────────────────────────────────────


@router.get("/historical-data/status")
async def get_historical_status(request: Request) -> JSONResponse:
    reconciler = request.app.state.reconciler
    status = await reconciler.get_status()
    fresh = await reconciler.is_fresh()
    return _ok(
        f"{status.record_count} daily records, {status.completeness}% complete",
        {**status.to_dict(), "is_fresh": fresh},
    )


@router.post("/historical-data/update")
async def update_historical_data(request: Request) -> JSONResponse:
    result = await request.app.state.reconciler.run()
    return _respond(
        OperationResult(success=result.success, message=result.message, data=result),
        200 if result.success else 502,
    )


@router.post("/historical-data/fetch")
async def fetch_historical_period(request: Request) -> JSONResponse:
    """Body: {"period": "3M" | "6M" | "1Y" | "2Y" | "5Y" | "ALL"}."""
    try:
        period = (await _json_body(request)).get("period")
        if not isinstance(period, str):
            raise ValidationError("Missing required field: period")
        result = await request.app.state.reconciler.backfill_period(period)
    except ValidationError as e:
        return _fail(str(e), 400)
    return _respond(
        OperationResult(success=result.success, message=result.message, data=result),
        200 if result.success else 502,
    )


# ──────────────────────────────────────────────
# Exchange rates
# ──────────────────────────────────────────────


@router.get("/exchange-rates")
async def list_exchange_rates(request: Request) -> JSONResponse:
    rates = await request.app.state.rates.get_all()
    return _ok(f"{len(rates)} cached rates", rates)


@router.get("/exchange-rates/{base}/{quote}")
async def get_exchange_rate(request: Request, base: str, quote: str) -> JSONResponse:
    try:
        rate = await request.app.state.rates.get(base, quote)
    except ValidationError as e:
        return _fail(str(e), 400)
    return _ok(
        f"1 {base.upper()} = {rate} {quote.upper()}",
        {"base": base.upper(), "quote": quote.upper(), "rate": rate},
    )


@router.delete("/exchange-rates")
async def clear_exchange_rates(request: Request) -> JSONResponse:
    await request.app.state.rates.clear()
    return _ok("Exchange rate cache cleared")
