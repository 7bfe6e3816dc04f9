"""
HTTP API used by the admin front-end.

Run with:
    uvicorn --factory cloud_voucher_sync.api:create_app --port 8000
"""
from __future__ import annotations
from datetime import date
from typing import Any, Callable, Optional
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from loguru import logger

from . import __version__
from .config import SyncConfig, configure_logging
from .errors import NoDataFound
from .source import SourceClient
from .sync import PurchaseSubmitter, VoucherSubmitter

router = APIRouter(prefix="/api", tags=["vouchers"])


def get_config() -> SyncConfig:
    return SyncConfig.from_env()


# Factories are dependencies so tests can swap in fakes.
def get_sale_submitter_factory() -> Callable[[SyncConfig], VoucherSubmitter]:
    return VoucherSubmitter


def get_purchase_submitter_factory() -> Callable[[SyncConfig], PurchaseSubmitter]:
    return PurchaseSubmitter


def get_source_factory() -> Callable[[SyncConfig], SourceClient]:
    return SourceClient


async def _data(request: Request) -> Any:
    body = await request.json()
    return body.get("data") if isinstance(body, dict) else None


def _run_sales(make_submitter, config: SyncConfig, items: Any) -> list[dict]:
    with make_submitter(config) as submitter:
        return [r.to_dict() for r in submitter.submit_batch(items)]


def _run_purchases(make_submitter, config: SyncConfig, documents: Any) -> Any:
    with make_submitter(config) as submitter:
        return submitter.submit_batch(documents)


def _run_fetch(make_source, config: SyncConfig, start: date, end: date) -> list[dict]:
    with make_source(config) as source:
        return source.fetch_sales(start, end)


@router.post("/nepal/sale")
async def submit_nepal_sales(
    request: Request,
    config: SyncConfig = Depends(get_config),
    make_submitter=Depends(get_sale_submitter_factory),
):
    """
    Number and submit Nepal sales line items.

    Always 200 with one result per item; 500 only when the batch itself
    could not be processed.
    """
    try:
        items = await _data(request)
        results = await run_in_threadpool(_run_sales, make_submitter, config, items)
    except Exception as e:
        logger.exception(f"Error submitting sales vouchers: {e}")
        return JSONResponse({"error": "Failed to submit sales vouchers"}, status_code=500)
    return {"results": results}


@router.post("/nepal/purchase")
async def submit_nepal_purchases(
    request: Request,
    config: SyncConfig = Depends(get_config),
    make_submitter=Depends(get_purchase_submitter_factory),
):
    try:
        documents = await _data(request)
        body = await run_in_threadpool(_run_purchases, make_submitter, config, documents)
    except Exception as e:
        logger.exception(f"Error submitting purchase vouchers: {e}")
        return JSONResponse({"error": "Failed to submit vouchers"}, status_code=500)
    return body


@router.get("/sales")
async def list_sales(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    config: SyncConfig = Depends(get_config),
    make_source=Depends(get_source_factory),
):
    try:
        records = await run_in_threadpool(_run_fetch, make_source, config, start_date, end_date)
    except NoDataFound:
        return JSONResponse({"error": "No Data Found"}, status_code=404)
    except Exception as e:
        logger.error(f"Error fetching sales entries: {e}")
        return JSONResponse({"error": "Failed to fetch sales entries"}, status_code=500)
    return {"data": records}


def create_app(config: Optional[SyncConfig] = None) -> FastAPI:
    """Build the API. Logging sinks are installed when the server starts, not on import."""
    app = FastAPI(title="Cloud Voucher Sync API", version=__version__)
    app.include_router(router)

    @app.on_event("startup")
    def _configure_logging():
        configure_logging(config)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
