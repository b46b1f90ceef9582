from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger, setup_logging
from app.models import Contact, Conversation, Message, OutboxNotification
from app.routers import internal, mailgun, twilio

setup_logging(settings.log_level)

logger = get_logger("app")

app = FastAPI(
    title="Comms Core",
    description="Inbound webhooks, outbound policy and notification dispatch for email and SMS",
    version="0.1.0",
)

app.include_router(mailgun.router)
app.include_router(twilio.router)
app.include_router(internal.router)


@app.exception_handler(SQLAlchemyError)
async def handle_database_error(request: Request, exc: SQLAlchemyError):
    logger.error(
        "Database error",
        exc_info=exc,
        extra={"context": {"path": request.url.path, "error_type": type(exc).__name__}},
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    pending = (
        db.query(func.count(OutboxNotification.id))
        .filter(OutboxNotification.status.in_(["pending", "sending"]))
        .scalar()
    )
    return {
        "status": "ok",
        "contacts": db.query(Contact).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "outbox_pending": int(pending or 0),
    }
