# chat client for the market assistant
import os
from typing import Dict, List, Optional

import httpx
from dotenv import load_dotenv
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.utils.errors import UpstreamSourceError
from src.utils.logger import assistant_logger as logger

load_dotenv()

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE = os.getenv("OPENAI_BASE", "https://api.openai.com")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
HEADERS = {"Authorization": f"Bearer {OPENAI_API_KEY}", "Content-Type": "application/json"}


@retry(stop=stop_after_attempt(3), wait=wait_exponential(min=0.5, max=4), retry=retry_if_exception_type(httpx.HTTPError))
async def _post_chat(payload: dict, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
        r = await client.post(f"{OPENAI_BASE}/v1/chat/completions", headers=HEADERS, json=payload)
        r.raise_for_status()
        return r.json()


async def chat_completion(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    max_tokens: int = 512,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Send chat messages and return the assistant's reply text.

    Raises:
        UpstreamSourceError: the model endpoint kept failing
    """
    payload = {
        "model": model or OPENAI_MODEL,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": 0.2,
    }
    try:
        data = await _post_chat(payload, transport)
    except RetryError as e:
        cause = e.last_attempt.exception()
        logger.error(f"❌ Chat model failed after retries: {cause}")
        raise UpstreamSourceError("Assistant unavailable", {"cause": str(cause)}) from cause
    # extract assistant reply text
    return data["choices"][0]["message"]["content"]
