"""Willow conversation service — streaming onboarding chat and transcript extraction."""
import hmac
import logging
import os
import time

# Console at INFO; full timestamps go to logs/willow.log
_LOG_LINE = "%(asctime)s %(levelname)s %(name)s | %(message)s"
logging.basicConfig(level=logging.INFO, format=_LOG_LINE, datefmt="%H:%M:%S")
_LOG_DIR = os.environ.get("WILLOW_LOG_DIR", "logs")
os.makedirs(_LOG_DIR, exist_ok=True)
_log_file = logging.FileHandler(os.path.join(_LOG_DIR, "willow.log"), encoding="utf-8")
_log_file.setFormatter(logging.Formatter(_LOG_LINE, datefmt="%Y-%m-%d %H:%M:%S"))
logging.getLogger().addHandler(_log_file)

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends
from fastapi.responses import StreamingResponse, JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError
from willow.config import load_config, WillowConfig, config as default_config
from willow.llm.client import LLMClient
from willow.models import (
    ExtractRequest, ExtractResponse, OnboardingRequest, StatusResponse, Directive,
)
from willow.prompts import CONVERSATION_SYSTEM_PROMPT, OPENING_STARTER, build_extraction_prompt
from willow.utils.parsers import format_transcript, parse_json_object

logger = logging.getLogger(__name__)

# Set by lifespan (tests patch these directly)
config: WillowConfig = None
llm_client: LLMClient = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global config, llm_client

    config_path = os.environ.get("WILLOW_CONFIG", "config.yaml")
    config = load_config(config_path) if os.path.exists(config_path) else default_config
    llm_client = LLMClient(config)
    logger.info(f"[Server] Ready. conversation={config.models.conversation} extraction={config.models.extraction}")
    try:
        yield
    finally:
        await llm_client.close()
        logger.info("[Server] LLM client closed")


app = FastAPI(title="Willow Intake", version="1.0.0", lifespan=lifespan)


# ============================================================
# Auth
# ============================================================

_bearer = HTTPBearer(auto_error=False)


def _key_matches(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def _verify_bearer(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> None:
    """Require ``Authorization: Bearer <server.api_key>`` when a key is configured."""
    expected = config.server.api_key if config else ""
    if expected and (credentials is None or not _key_matches(credentials.credentials, expected)):
        logger.warning("[Server] Rejected request with missing or wrong API key")
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ============================================================
# Onboarding conversation (streaming)
# ============================================================

def _conversation_messages(request: OnboardingRequest) -> list[dict]:
    """System prompt + transcript; an empty transcript gets a silent starter turn."""
    turns = [{"role": m.role, "content": m.content} for m in request.messages]
    if not turns:
        turns = [{"role": "user", "content": OPENING_STARTER}]
    return [{"role": "system", "content": CONVERSATION_SYSTEM_PROMPT}, *turns]


@app.post("/api/v1/ai/onboarding", dependencies=[Depends(_verify_bearer)])
async def onboarding(request: OnboardingRequest):
    if request.messages is None:
        return JSONResponse(status_code=400, content={"error": "messages array is required"})

    messages = _conversation_messages(request)
    logger.info(f"[Server] Onboarding turn: {len(request.messages)} prior messages")

    stream = llm_client.call_llm_stream(
        model=config.models.conversation,
        messages=messages,
        temperature=config.generation.temperature,
        max_tokens=config.generation.max_tokens,
    )

    # First chunk is pulled before the 200 is committed
    t_start = time.time()
    try:
        first = await anext(stream, "")
    except Exception as e:
        logger.error(f"[Server] Onboarding stream failed to start: {e}", exc_info=True)
        await stream.aclose()
        return JSONResponse(status_code=500, content={"error": "AI service unavailable"})
    logger.info(f"[Server] TTFT: {(time.time() - t_start) * 1000:.0f}ms")

    async def _relay():
        total = len(first)
        if first:
            yield first
        try:
            async for chunk in stream:
                total += len(chunk)
                yield chunk
        except Exception as e:
            # Headers already sent
            logger.error(f"[Server] Onboarding stream broke after {total}ch: {e}", exc_info=True)
        finally:
            await stream.aclose()
        logger.info(f"[Server] Stream done: {(time.time() - t_start) * 1000:.0f}ms | response={total}ch")

    return StreamingResponse(
        _relay(),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ============================================================
# Full-transcript extraction (finalize fallback)
# ============================================================

@app.post("/api/v1/ai/extract", dependencies=[Depends(_verify_bearer)])
async def extract(request: ExtractRequest):
    if not request.messages:
        return JSONResponse(status_code=400, content={"error": "messages array is required"})

    conversation_text = format_transcript([m.model_dump() for m in request.messages])
    try:
        reply = await llm_client.call_llm(
            model=config.models.extraction,
            messages=[{"role": "user", "content": build_extraction_prompt(conversation_text)}],
            temperature=0.0,
            max_tokens=config.generation.extract_max_tokens,
        )
    except Exception as e:
        logger.error(f"[Server] Extraction call failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Failed to extract data"})

    data = parse_json_object(reply)
    if data is None:
        return JSONResponse(status_code=500, content={"error": "Failed to extract data"})
    try:
        directive = Directive.model_validate(data)
    except ValidationError as e:
        logger.warning(f"[Server] Extraction result failed validation: {e.error_count()} error(s)")
        return JSONResponse(status_code=500, content={"error": "Failed to extract data"})

    logger.info(f"[Server] Extracted recipient_name={directive.identity_name!r} from {len(request.messages)} messages")
    return ExtractResponse(extracted=directive.to_payload())


# ============================================================
# Status
# ============================================================

@app.get("/api/status", dependencies=[Depends(_verify_bearer)])
async def get_status():
    return StatusResponse(status="running", conversation_model=config.models.conversation)
