from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing_engine.modules.billing.api.v1.billing import router as billing_router
from billing_engine.modules.billing.domain.billing.engine import BillingEngine
from billing_engine.shared.core.config import get_settings, reload_settings_from_environment
from billing_engine.shared.core.exceptions import BillingEngineException
from billing_engine.shared.core.logging import setup_logging

setup_logging()
logger = structlog.get_logger()


def create_app(engine: Optional[BillingEngine] = None) -> FastAPI:
    """
    Build the HTTP application. A pre-built engine (tests, embedding) is
    started and stopped by the lifespan but otherwise used as given.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        settings = reload_settings_from_environment()
        logger.info("app_starting", app_name=settings.APP_NAME)

        billing_engine = engine or BillingEngine.from_settings(settings)
        await billing_engine.startup()
        app.state.billing_engine = billing_engine
        try:
            yield
        finally:
            logger.info("app_stopping")
            await billing_engine.shutdown()

    settings = get_settings()
    app = FastAPI(title=settings.APP_NAME, version=settings.VERSION, lifespan=lifespan)

    @app.exception_handler(BillingEngineException)
    async def billing_engine_exception_handler(
        request: Request, exc: BillingEngineException
    ) -> JSONResponse:
        """Handle custom application exceptions."""
        logger.error(
            "billing_engine_exception",
            path=request.url.path,
            code=exc.code,
            error=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "code": exc.code, "details": exc.details},
        )

    @app.get("/health")
    async def health(request: Request) -> dict[str, str]:
        billing_engine = getattr(request.app.state, "billing_engine", None)
        started = billing_engine is not None and billing_engine.started
        return {"status": "ok" if started else "starting"}

    app.include_router(billing_router, prefix="/api/v1/billing")
    return app
