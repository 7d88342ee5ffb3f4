import logging
from typing import Annotated, List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.core import models, schemas
from app.core.security import current_user_dep, validate_admin_role
from app.ai_feature.errors import NotOwned
from app.ai_feature.service import Assistant

router = APIRouter(prefix="/assistant", tags=["Assistant"])


# Wired by the app lifespan
def get_assistant(request: Request) -> Assistant:
    return request.app.state.assistant


assistant_dep = Annotated[Assistant, Depends(get_assistant)]


# Ask a question
@router.post("/ask", response_model=schemas.AskResponse, status_code=status.HTTP_200_OK)
async def ask(
    payload: schemas.AskRequest,
    current_user: current_user_dep,
    assistant: assistant_dep,
):
    try:
        result = await assistant.ask_extended(
            current_user.id, payload.question, payload.conversation_id
        )
    except NotOwned:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found"
        )
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error)
        )
    except Exception as error:
        logging.error(f"[User {current_user.id}] Assistant failed: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to answer the question",
        )

    return {"answer": result.answer, "conversation_id": result.conversation_id}


# Conversations of the caller, newest first
@router.get("/conversations", response_model=List[schemas.ConversationSummary])
async def list_conversations(current_user: current_user_dep, assistant: assistant_dep):
    return await assistant.store.list_conversations(current_user.id)


# Turns of one conversation
@router.get(
    "/conversations/{conversation_id}",
    response_model=List[schemas.TurnResponse],
)
async def get_conversation(
    conversation_id: str, current_user: current_user_dep, assistant: assistant_dep
):
    try:
        turns = await assistant.store.load(conversation_id, current_user.id)
    except NotOwned:
        turns = []

    # Unknown and foreign conversations look the same
    if not turns:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found"
        )
    return turns


# What the assistant can see
@router.get("/schema", response_model=schemas.SchemaDescriptor)
async def get_schema(
    admin: Annotated[models.User, Depends(validate_admin_role)],
    assistant: assistant_dep,
):
    return assistant.catalog.describe()
