import os
import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from eventdesk import config
from eventdesk.database import Base, engine
from eventdesk.errors import EventDeskError
from eventdesk.logs import configure_logging
from eventdesk.payments import PaymentService
from eventdesk.routes import attendee_router, get_payment_service, router, scan_router

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Event Desk Payments & Check-in")

app.include_router(router)
app.include_router(scan_router)
app.include_router(attendee_router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(EventDeskError)
async def event_desk_error_handler(request: Request, exc: EventDeskError):
    if exc.status_code >= 500:
        logger.error("request_failed", method=request.method, path=request.url.path,
                     status=exc.status_code, error=exc.message,
                     cause=repr(exc.cause) if exc.cause else None)
    content = {"status": "error", "message": exc.message}
    if config.is_development() and exc.cause is not None:
        content["detail"] = repr(exc.cause)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"status": "error", "message": "Invalid input",
                 "errors": jsonable_encoder(exc.errors())},
    )


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    x_signature: str = Header(None),
    service: PaymentService = Depends(get_payment_service),
):
    payload = await request.body()
    # gateway, database and SMTP calls block; keep them off the event loop
    await run_in_threadpool(service.process_webhook, payload, x_signature,
                            os.getenv("WEBHOOK_SECRET"))
    return {"received": True}
