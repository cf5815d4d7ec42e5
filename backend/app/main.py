from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from reconciliation.errors import InvalidInputError

from . import schemas
from .core.config import settings
from .db import init_db
from .services.portfolio_service import PortfolioService, build_portfolio_service

app = FastAPI(title="Walletscope API", version="0.1.0", debug=settings.debug)


@lru_cache
def _service_instance() -> PortfolioService:
    return build_portfolio_service(settings)


def _portfolio_service() -> PortfolioService:
    """Provide the process-wide portfolio service."""

    return _service_instance()


@app.on_event("startup")
def on_startup() -> None:
    """Initialize the cache tables when the API boots."""

    init_db()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    if _service_instance.cache_info().currsize:
        await _service_instance().aclose()


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
    logger.info("Rejected {} {}: {}", request.method, request.url.path, exc)
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


@app.get(
    "/wallets/{wallet}/tokens/{token_id}",
    response_model=schemas.TokenPositionResponse,
    tags=["positions"],
)
async def get_token_position(
    wallet: str,
    token_id: str,
    background_tasks: BackgroundTasks,
    contract: Annotated[
        str | None, Query(description="NFT contract; defaults to the configured collection")
    ] = None,
    refresh: Annotated[
        bool, Query(description="Re-run the pipeline after serving a cached result")
    ] = True,
    service: PortfolioService = Depends(_portfolio_service),
):
    """Acquisition cost and current position of one token held by ``wallet``."""

    view = await service.view_token(wallet, token_id, contract_address=contract, refresh=refresh)
    if view.background is not None:
        background_tasks.add_task(view.background)
    return schemas.TokenPositionResponse.from_result(
        view.result, refresh_scheduled=view.background is not None
    )


@app.get(
    "/wallets/{wallet}/portfolio",
    response_model=schemas.PortfolioResponse,
    tags=["positions"],
)
async def get_portfolio(
    wallet: str,
    token_id: Annotated[
        list[str], Query(description="Token ids to reconcile, in display order")
    ] = [],
    contract: Annotated[
        str | None, Query(description="NFT contract; defaults to the configured collection")
    ] = None,
    service: PortfolioService = Depends(_portfolio_service),
):
    """Reconcile several tokens of one wallet in bounded batches."""

    view = await service.view_portfolio(wallet, token_id, contract_address=contract)
    items = [schemas.TokenPositionResponse.from_result(result) for result in view.results]
    return schemas.PortfolioResponse(
        wallet_address=wallet.lower(),
        total=len(items),
        complete=view.complete,
        items=items,
    )


@app.delete(
    "/wallets/{wallet}/cache",
    response_model=schemas.CacheClearResponse,
    tags=["positions"],
)
async def clear_wallet_cache(wallet: str, service: PortfolioService = Depends(_portfolio_service)):
    """Drop cached reconciliations for ``wallet`` and cancel its in-flight refreshes."""

    removed = await service.clear_wallet(wallet)
    return schemas.CacheClearResponse(wallet_address=wallet.lower(), removed=removed)
