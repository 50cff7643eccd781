from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
import logging

import uvicorn

from dlmm_viewer.core.cache import CacheService
from dlmm_viewer.core.config import settings
from dlmm_viewer.core.logging_config import setup_logging
from dlmm_viewer.services.adapters import DlmmAccountService, EventSourceRegistry
from dlmm_viewer.services.meteora_api import MeteoraApiService
from dlmm_viewer.services.positions import PositionService
from dlmm_viewer.services.price_oracle import PriceOracleService
from dlmm_viewer.services.solana_rpc import SolanaRpcService
from dlmm_viewer.services.token_metadata import TokenMetadataService
from dlmm_viewer.app.api.v1 import positions

# Setup logging
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service graph on startup, close clients on shutdown"""
    logger.info("Starting DLMM Position Viewer API")
    cache = CacheService(settings.redis_url, default_ttl=settings.aggregate_ttl)
    rpc = SolanaRpcService(settings, cache)
    oracle = PriceOracleService(settings, cache)
    meteora = MeteoraApiService(settings, cache)
    accounts = DlmmAccountService(rpc, settings.dlmm_program_id)
    tokens = TokenMetadataService(rpc, cache)
    source = EventSourceRegistry.create(settings, rpc=rpc, meteora=meteora, accounts=accounts)

    app.state.position_service = PositionService(settings, rpc, accounts, tokens, oracle, source)
    yield
    logger.info("Shutting down DLMM Position Viewer API")
    await rpc.close()
    await oracle.close()
    await meteora.close()
    await cache.close()

app = FastAPI(
    title="DLMM Position Viewer API",
    description="Profit and loss reconstruction for DLMM liquidity positions",
    version="0.1.0",
    lifespan=lifespan
)

# CORS - configured via CORS_ORIGINS env var, defaults to localhost in development
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors()},
    )


# Routes
app.include_router(positions.router, prefix="/api/v1", tags=["positions"])

@app.get("/")
async def root():
    return {
        "status": "operational",
        "service": "DLMM Position Viewer API",
        "version": "0.1.0"
    }

@app.get("/health")
async def health():
    return {"status": "healthy"}


def run():
    """Console entry point"""
    uvicorn.run(
        "dlmm_viewer.app.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=not settings.is_production,
    )
