import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from payment_service.database import Base, SessionLocal, engine
from payment_service.dependencies import get_settings
from payment_service.errors import PaymentError
from payment_service.logging_config import setup_logging
from payment_service.routes import router
from payment_service.sweeper import start_sweeper, stop_sweeper

settings = get_settings()
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Course Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        detail = exc.public_message
    else:
        detail = exc.message
    return JSONResponse(status_code=exc.status_code, content={"success": False, "detail": detail})


@app.on_event("startup")
def start_background_sweeper():
    start_sweeper(SessionLocal, settings.PENDING_TIMEOUT_MINUTES, settings.SWEEP_INTERVAL_SECONDS)


@app.on_event("shutdown")
def stop_background_sweeper():
    stop_sweeper()


@app.get("/health")
def health():
    return {"status": "ok"}
