"""Internal endpoints triggered by the scheduler or other backend services."""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.schemas.internal import (
    DispatchResponse,
    PolicyEvaluateRequest,
    PolicyEvaluateResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from app.services.dispatch_service import dispatch_pending_notifications
from app.services.policy_service import evaluate_comms_policy
from app.services.send_service import SendError, load_contact, queue_outbound_message
from app.services.tenant_service import load_comms_settings

logger = get_logger("internal")

router = APIRouter(prefix="/internal", tags=["internal"])


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def require_internal_secret(
    x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret"),
    authorization: Optional[str] = Header(default=None),
) -> None:
    expected = settings.internal_dispatch_secret
    if not expected:
        raise HTTPException(status_code=500, detail="INTERNAL_DISPATCH_SECRET not configured")
    provided = (x_internal_secret or "").strip() or _bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid internal secret")


@router.post(
    "/notifications/dispatch",
    response_model=DispatchResponse,
    dependencies=[Depends(require_internal_secret)],
)
def dispatch_notifications(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
):
    summary = dispatch_pending_notifications(db, limit=limit or settings.outbox_batch_limit)
    return DispatchResponse(ok=True, **summary.to_dict())


@router.post(
    "/messages/send",
    response_model=SendMessageResponse,
    dependencies=[Depends(require_internal_secret)],
)
def send_message(request: SendMessageRequest, db: Session = Depends(get_db)):
    try:
        outcome = queue_outbound_message(db, request)
    except SendError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    db.commit()

    decision = outcome.decision.to_dict()
    return SendMessageResponse(
        ok=outcome.ok,
        message_id=outcome.message.id if outcome.message else None,
        outbox_id=outcome.outbox.id if outcome.outbox else None,
        idempotent=outcome.idempotent,
        code=decision.get("code"),
        reason=decision.get("reason"),
    )


@router.post(
    "/policy/evaluate",
    response_model=PolicyEvaluateResponse,
    dependencies=[Depends(require_internal_secret)],
)
def evaluate_policy(request: PolicyEvaluateRequest, db: Session = Depends(get_db)):
    """Dry-run the outbound policy; nothing is written."""
    if load_contact(db, request.tenant_id, request.contact_id) is None:
        raise HTTPException(status_code=404, detail="Contact not found")
    decision = evaluate_comms_policy(
        db,
        tenant_id=request.tenant_id,
        contact_id=request.contact_id,
        channel=request.channel,
        settings=load_comms_settings(db, request.tenant_id),
        dedupe_key=request.dedupe_key,
        now=request.at,
    )
    return PolicyEvaluateResponse(**decision.to_dict())
