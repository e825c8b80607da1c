import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from salon_payments import config
from salon_payments.database import Base, SessionLocal, engine, get_db
from salon_payments.errors import PaymentServiceError
from salon_payments.log_config import setup_logging
from salon_payments.monitoring_routes import router as monitoring_router
from salon_payments.payment_log import PaymentLogBuffer, PaymentLogger
from salon_payments.routes import get_payment_logger, plan_router, router
from salon_payments.webhooks import WebhookProcessor, construct_event

setup_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Salon Payment Service")
app.state.payment_logger = PaymentLogger(PaymentLogBuffer(), session_factory=SessionLocal)

app.include_router(router)
app.include_router(plan_router)
app.include_router(monitoring_router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentServiceError)
async def payment_service_error_handler(request: Request, exc: PaymentServiceError):
    if exc.status_code >= 500:
        logger.error("request.failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None),
                         db: Session = Depends(get_db),
                         payment_logger: PaymentLogger = Depends(get_payment_logger)):
    payload = await request.body()
    event = construct_event(payload, stripe_signature)
    return WebhookProcessor(db, payment_logger).process(event)


def run() -> None:
    """Development server entry point."""
    import uvicorn

    uvicorn.run(
        "salon_payments.main:app",
        host=config.server_host(),
        port=config.server_port(),
        log_level=config.log_level().lower(),
    )


if __name__ == "__main__":
    run()
