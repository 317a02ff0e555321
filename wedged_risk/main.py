from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import structlog
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from . import __version__
from .background_tasks import BackgroundTaskManager
from .cache import RiskCache, default_ttls
from .chain_reader import ChainReader, Web3ChainReader
from .config import Settings
from .error_handling import NotFound, RiskEngineError, UpstreamUnavailable
from .history import RiskHistory
from .notifications import RiskUpdateNotifier
from .risk_engine import RiskEngine
from .routes import router
from .sampler import PriceSampler


def configure_logging(level: str = "INFO"):
    """Configure structured JSON logging"""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _status_for(exc: RiskEngineError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, UpstreamUnavailable):
        return 503
    return 500


def build_engine(settings: Settings, chain_reader: Optional[ChainReader] = None) -> RiskEngine:
    """Wire a RiskEngine and its collaborators from settings"""
    return RiskEngine(
        chain_reader=chain_reader or Web3ChainReader(settings),
        cache=RiskCache(default_ttls(settings)),
        sampler=PriceSampler(settings.PRICE_HISTORY_CAPACITY),
        settings=settings,
        notifier=RiskUpdateNotifier(),
        history=RiskHistory(settings.HISTORY_MAX_ENTRIES)
    )


def create_app(settings: Optional[Settings] = None, chain_reader: Optional[ChainReader] = None) -> FastAPI:
    """Composition root: every collaborator is created here and hung off app.state"""
    settings = settings or Settings()
    configure_logging(settings.LOG_LEVEL)
    engine = build_engine(settings, chain_reader)
    background = BackgroundTaskManager(engine, settings) if settings.ENABLE_BACKGROUND_TASKS else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        logger.info("Starting Wedged Risk Engine", env=settings.ENV, rpc_url=settings.RPC_URL)

        if background is not None:
            await background.start()
            logger.info("Background tasks started")

        yield

        logger.info("Shutting down Wedged Risk Engine")
        try:
            if background is not None:
                await background.stop()
                logger.info("Background tasks stopped")
            await engine.close()
        except Exception as e:
            logger.error("Error during shutdown", error=str(e))

        logger.info("Wedged Risk Engine shutdown complete")

    app = FastAPI(
        title="Wedged Risk Engine",
        description="Pool risk analytics, hedging recommendations and cached risk queries",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.risk_engine = engine
    app.state.background_tasks = background
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Request failed",
                         method=request.method,
                         url=str(request.url),
                         error=str(e),
                         process_time=round(time.time() - start_time, 3))
            raise

        process_time = time.time() - start_time
        logger.info("Request completed",
                    method=request.method,
                    url=str(request.url),
                    status_code=response.status_code,
                    process_time=round(process_time, 3))

        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.exception_handler(RiskEngineError)
    async def risk_engine_error_handler(request: Request, exc: RiskEngineError):
        status_code = _status_for(exc)
        log = logger.error if status_code == 500 else logger.warning
        log("Risk query failed", url=str(request.url), error=str(exc), error_type=type(exc).__name__, status_code=status_code)
        return JSONResponse(
            status_code=status_code,
            content={"error": str(exc), "status_code": status_code, "timestamp": _utcnow_iso()}
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handler for HTTP exceptions"""
        logger.warning("HTTP exception",
                       method=request.method,
                       url=str(request.url),
                       status_code=exc.status_code,
                       detail=exc.detail)

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "status_code": exc.status_code, "timestamp": _utcnow_iso()}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors"""
        logger.error("Unhandled exception",
                     method=request.method,
                     url=str(request.url),
                     error=str(exc),
                     error_type=type(exc).__name__)

        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "timestamp": _utcnow_iso()}
        )

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint with service information"""
        return {
            "service": "Wedged Risk Engine",
            "version": __version__,
            "status": "operational",
            "timestamp": _utcnow_iso(),
            "endpoints": {
                "health": "/api/risk/health",
                "pool_risk": "/api/pools/{pool_id}/risk",
                "history": "/api/pools/{pool_id}/risk/history?timeframe=24h",
                "recommendations": "/api/pools/{pool_id}/recommendations",
                "market": "/api/market/conditions",
                "cache_stats": "/api/cache/stats",
                "docs": "/docs"
            }
        }

    return app
