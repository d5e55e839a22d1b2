import asyncio
from contextlib import asynccontextmanager, suppress

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from blesspay.config import get_settings
from blesspay.database import Base, engine
from blesspay.dependencies import get_reconciler
from blesspay.logging_config import setup_logging
from blesspay.models import IntentTransitionRecord, PaymentIntentRecord  # noqa: F401
from blesspay.routes import router
from blesspay.sweeper import run_expiry_sweeper

setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    sweeper = None
    if settings.expiry_sweep_interval > 0:
        reconciler = app.dependency_overrides.get(get_reconciler, get_reconciler)()
        sweeper = asyncio.create_task(
            run_expiry_sweeper(reconciler, settings.expiry_sweep_interval)
        )
    yield
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(title="BlessPay Payment Service", lifespan=lifespan)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.post("/webhooks/{provider}")
async def provider_webhook(provider: str, request: Request, reconciler=Depends(get_reconciler)):
    gateway = reconciler.gateways.get(provider)
    if gateway is None:
        raise HTTPException(status_code=404, detail="Unknown provider")

    payload = await request.body()
    signature = request.headers.get(gateway.signature_header)

    result = await run_in_threadpool(reconciler.apply_callback, provider, payload, signature)
    if not result.acknowledged:
        raise HTTPException(status_code=401, detail="Invalid signature")

    logger.info(
        "webhook_handled",
        provider=provider,
        outcome=result.outcome.value,
        intent_id=result.intent.id if result.intent else None,
    )
    return gateway.acknowledgement()
