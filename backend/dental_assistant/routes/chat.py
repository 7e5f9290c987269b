from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import issue_verification_token, optional_auth, verified_patient_from_token
from ..db import get_session
from ..schemas import ChatMessage, ChatRequest, ChatResponse
from ..services import repository
from ..services.conversation import route_message

router = APIRouter()


@router.post("/chat", response_model=ChatResponse)
async def chat(
    payload: ChatRequest,
    db: Session = Depends(get_session),
    claims: dict[str, Any] | None = Depends(optional_auth),
) -> ChatResponse:
    account = claims.get("sub") if claims else None
    # Patient ids only come from the login or a token this server signed.
    update: dict[str, Any] = {
        "authenticated": claims is not None,
        "patient_id": None,
        "verified_patient_id": verified_patient_from_token(
            payload.context.verification_token, account
        ),
    }
    if account:
        patient = repository.primary_patient_for_user(db, account)
        if patient:
            update["patient_id"] = patient.id
            update["patient_name"] = payload.context.patient_name or patient.full_name
    context = payload.context.model_copy(update=update)

    user_message = ChatMessage(role="user", content=payload.message)
    history = [message.model_dump() for message in payload.messages]
    history.append(user_message.model_dump())

    result = await route_message(db, history, context)
    token = None
    if result.verified_patient_id:
        token = issue_verification_token(result.verified_patient_id, account)
    return ChatResponse(
        messages=[user_message, ChatMessage(role="assistant", content=result.bot_message)],
        ui_action=result.ui_action,
        intent=result.intent.value,
        verified_patient_id=result.verified_patient_id,
        verification_token=token,
    )
