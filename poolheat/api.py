# SPDX-License-Identifier: MPL-2.0
"""
poolheat HTTP API

Exposes schedule building, schedule inspection, schedule execution, settings,
manual override, price push and device status for the surrounding application.
"""

import argparse
import logging
from datetime import date, datetime
from typing import List, Optional, Union

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from poolheat.automation import AutomationService, create_service
from poolheat.config import configure_logging, load_config
from poolheat.exceptions import ConfigurationError
from poolheat.models import PricePoint

logger = logging.getLogger(__name__)

router = APIRouter()

# HTTP status per failure type
ERROR_STATUS = {
    "NoPriceDataError": 503,
    "ConfigurationError": 400,
    "PersistenceError": 500,
    "DeviceError": 502,
}


class SettingsUpdateRequest(BaseModel):
    """Partial settings update; omitted fields keep their value."""
    baseline_temp: Optional[float] = None
    automation_enabled: Optional[bool] = None
    min_pump_temp: Optional[float] = None
    max_pump_temp: Optional[float] = None
    rolling_window_days: Optional[int] = None
    low_price_ratio: Optional[float] = None
    high_price_ratio: Optional[float] = None
    low_temp_offset: Optional[float] = None
    high_temp_offset: Optional[float] = None
    absolute_shutdown_price: Optional[float] = None
    bidding_zone: Optional[str] = None


class OverrideRequest(BaseModel):
    """Manual command: set_power, set_temperature, pause or resume."""
    action: str
    value: Optional[Union[bool, float]] = None


class PricePointModel(BaseModel):
    zone: str
    start_time: datetime
    end_time: datetime
    total_price: float
    energy_price: Optional[float] = None
    provider: str = "default"


class PricesRequest(BaseModel):
    prices: List[PricePointModel] = Field(default_factory=list)


def _service(request: Request) -> AutomationService:
    return request.app.state.service


def _respond(result: dict, failure_status: Optional[int] = None) -> JSONResponse:
    """Map a service result to a JSON response with a matching status code."""
    if result.get("success"):
        return JSONResponse(status_code=200, content=result)
    status = failure_status or ERROR_STATUS.get(result.get("error", ""), 500)
    return JSONResponse(status_code=status, content=result)


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "app": "poolheat"}


@router.post("/schedule")
def create_schedule(request: Request):
    """Build today's schedule from the stored prices."""
    result = _service(request).create_daily_schedule()
    if result.get("skipped"):
        # Nothing to do is not an error for the caller
        return JSONResponse(status_code=200, content=result)
    return _respond(result)


@router.get("/schedule")
def get_schedule(request: Request, for_date: Optional[date] = Query(default=None, alias="date")):
    """Return a day's schedule entries in hour order (default today)."""
    return _respond(_service(request).get_schedule(for_date))


@router.post("/schedule/execute")
def execute_schedule(request: Request):
    """Run the executor once."""
    return _respond(_service(request).execute_due())


@router.get("/settings")
def get_settings(request: Request):
    return _respond(_service(request).get_settings())


@router.post("/settings")
def update_settings(request: Request, body: SettingsUpdateRequest):
    changes = body.model_dump(exclude_none=True)
    return _respond(_service(request).update_settings(changes))


@router.post("/prices")
def push_prices(request: Request, body: PricesRequest):
    """Store price points pushed by an external price ingester."""
    for item in body.prices:
        if item.start_time.tzinfo is None or item.end_time.tzinfo is None:
            return JSONResponse(
                status_code=422,
                content={"success": False, "message": "Price timestamps must include a UTC offset"},
            )
    points = [PricePoint(**item.model_dump()) for item in body.prices]
    return _respond(_service(request).store_prices(points))


@router.post("/override")
def override(request: Request, body: OverrideRequest):
    """Send a manual command to the pump or pause/resume automation."""
    return _respond(_service(request).override(body.action, body.value))


@router.get("/status")
def device_status(request: Request):
    """Read the heat pump status."""
    return _respond(_service(request).device_status())


def create_app(service: AutomationService) -> FastAPI:
    """
    Create the FastAPI application around a service instance.

    Args:
        service: AutomationService handling all requests
    """
    app = FastAPI(
        title="poolheat API",
        description="Price-driven heat pump schedule planning and execution",
        version="0.1.0",
    )
    app.state.service = service

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Report unexpected failures as a structured result."""
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Internal server error",
                "error": type(exc).__name__,
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.include_router(router)
    return app


def main() -> int:
    """Load the configuration and serve the API with uvicorn."""
    import uvicorn

    parser = argparse.ArgumentParser(description='poolheat HTTP API')
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration file (default: searches /etc, /run, /usr/lib)'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level (default: WARNING)'
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        configure_logging('ERROR')
        logger.error(f"Configuration error: {e}")
        return 1

    if args.log_level:
        config.logging_level = args.log_level
    configure_logging(config.logging_level)

    app = create_app(create_service(config))
    uvicorn.run(app, host=config.api_host, port=config.api_port)
    return 0


if __name__ == "__main__":
    exit(main())
