"""Same-origin proxy that forwards Pycture prompts to the LLM provider.

Run with:  uvicorn pycture_proxy:app --port 8000
"""
import logging
import os
from typing import List

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from pycture import Provider, UpstreamError, call_provider

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("pycture.proxy")

app = FastAPI(title="Pycture proxy")


def allowed_origins() -> List[str]:
    raw = os.getenv("PYCTURE_ALLOWED_ORIGINS", "")
    return [o.strip().rstrip("/") for o in raw.split(",") if o.strip()]


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/generate")
async def generate(request: Request):
    """
    JSON body:
      - apiKey: provider key (required)
      - prompt: assembled prompt text (required)
      - provider: anthropic|openai (default anthropic)
    Returns {"content": <completion text>} or {"error": <message>}.
    """
    origins = allowed_origins()
    origin = request.headers.get("origin")
    # Browsers always send Origin on cross-site POSTs; server-side callers don't.
    if origins and origin is not None and origin.rstrip("/") not in origins:
        logger.warning("Rejected request from origin %s", origin)
        return _error(403, "Origin not allowed")

    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Request body must be JSON")
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")

    api_key = body.get("apiKey")
    prompt = body.get("prompt")
    if not api_key or not prompt:
        return _error(400, "Missing apiKey or prompt")
    try:
        provider = Provider(body.get("provider") or Provider.ANTHROPIC.value)
    except ValueError:
        return _error(400, f"Unsupported provider: {body.get('provider')}")

    try:
        content = await run_in_threadpool(call_provider, provider, api_key, prompt)
    except UpstreamError as e:
        status = e.status if e.status and e.status >= 400 else 502
        return _error(status, e.user_message)
    return {"content": content}
