from typing import Callable

from fastapi import APIRouter, Depends

from src.api.v1.deps import (
    get_collection_repo,
    get_recent_searches_loader,
    get_user_id,
    get_watchlist_repo,
)
from src.db.collection import CollectionRepository
from src.db.watchlist import WatchlistRepository
from src.models.api import AssistantAskRequest, AssistantAskResponse
from src.utils.ai_context import build_analyst_prompt, build_user_ai_context
from src.utils.logger import assistant_logger, log_api_request
from src.utils.openai import chat_completion
from src.utils.safe_handler import safe_handler

router = APIRouter()


def get_chat_completion() -> Callable:
    return chat_completion


@router.get("/context", summary="Data snapshot the assistant answers from")
@safe_handler(default_detail="Failed to build assistant context")
def assistant_context(
    user_id: str = Depends(get_user_id),
    collection_repo: CollectionRepository = Depends(get_collection_repo),
    watchlist_repo: WatchlistRepository = Depends(get_watchlist_repo),
    load_searches: Callable = Depends(get_recent_searches_loader),
):
    return build_user_ai_context(
        user_id,
        collection_repo.list_items(user_id),
        watchlist_repo.list_items(user_id),
        load_searches(user_id),
    )


@router.post("/ask", response_model=AssistantAskResponse, summary="Ask the market assistant")
@safe_handler(default_detail="Assistant request failed")
async def ask_assistant(
    request: AssistantAskRequest,
    user_id: str = Depends(get_user_id),
    collection_repo: CollectionRepository = Depends(get_collection_repo),
    watchlist_repo: WatchlistRepository = Depends(get_watchlist_repo),
    load_searches: Callable = Depends(get_recent_searches_loader),
    complete: Callable = Depends(get_chat_completion),
):
    log_api_request(assistant_logger, "POST", "/assistant/ask", {"user_id": user_id})
    context = build_user_ai_context(
        user_id,
        collection_repo.list_items(user_id),
        watchlist_repo.list_items(user_id),
        load_searches(user_id),
    )
    answer = await complete(build_analyst_prompt(context, request.question))
    return AssistantAskResponse(answer=answer, context=context)
