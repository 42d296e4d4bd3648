import logging
import re
from typing import AsyncIterator, List, Optional, Tuple

import anthropic
import httpx
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from .config import (
    ANTHROPIC_API_KEY,
    CLAUDE_MODEL,
    CLAUDE_RESPONSE_MAX_TOKENS,
    CLAUDE_TEMPERATURE,
    GOOGLE_HTTP_TIMEOUT,
    GOOGLE_MAPS_API_KEY,
    PROVIDER_SEARCH_RADIUS_M,
    configure_logging,
)
from .models import (
    DiagnoseRequest,
    GeocodeRequest,
    GeocodeResponse,
    ProviderSearchRequest,
    ProviderSearchResponse,
)
from .places import find_providers, geocode_address, reverse_geocode, trade_keyword
from .prompts import FORMAT_REMINDER, TRADE_QUERY_PROMPT, build_system_prompt

configure_logging()
logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)

_anthropic_client: Optional[anthropic.AsyncAnthropic] = None


def get_anthropic_client() -> Optional[anthropic.AsyncAnthropic]:
    global _anthropic_client
    if _anthropic_client is None and ANTHROPIC_API_KEY:
        _anthropic_client = anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY)
        logger.debug("server: Anthropic client initialized")
    return _anthropic_client


app = FastAPI(title="homediag API")


# ---------------- Message building ----------------
def split_data_url(url: str) -> Optional[Tuple[str, str]]:
    """Return (media_type, base64_data) for a base64 data URL."""
    m = _DATA_URL_RE.match(url or "")
    if not m:
        return None
    return m.group("mime").lower(), m.group("data")


def _image_block(url: str) -> Optional[dict]:
    parsed = split_data_url(url)
    if not parsed:
        logger.debug("diagnose: skipping attachment that is not a data URL")
        return None
    media_type, data = parsed
    if media_type not in SUPPORTED_IMAGE_TYPES:
        logger.debug("diagnose: skipping unsupported media type %s", media_type)
        return None
    return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}


def build_messages(req: DiagnoseRequest) -> List[dict]:
    """Primary image first, then the chat history; consecutive roles are merged."""
    first: List[dict] = [b for b in [_image_block(req.image)] if b]
    if not req.history:
        first.append({"type": "text", "text": "Diagnose the issue shown in this image." + FORMAT_REMINDER})
    turns: List[Tuple[str, List[dict]]] = [("user", first)]

    last = len(req.history) - 1
    for i, item in enumerate(req.history):
        blocks: List[dict] = []
        content = item.content or ""
        if item.role == "user" and i == last:
            content += FORMAT_REMINDER
        if content:
            blocks.append({"type": "text", "text": content})
        for att in item.attachments:
            block = _image_block(att)
            if block:
                blocks.append(block)
        if not blocks:
            continue
        if turns[-1][0] == item.role:
            turns[-1][1].extend(blocks)
        else:
            turns.append((item.role, blocks))

    return [{"role": role, "content": blocks} for role, blocks in turns]


async def _model_text(stream) -> AsyncIterator[str]:
    try:
        async for event in stream:
            if event.type == "content_block_delta" and getattr(event.delta, "type", "") == "text_delta":
                yield event.delta.text
    except anthropic.APIError as e:
        # The client must see an aborted body, not a clean EOF
        logger.error("diagnose: error during model stream: %s", e)
        raise
    finally:
        await stream.close()
        logger.debug("diagnose: stream closed")


# ---------------- Routes ----------------
@app.get("/api/health")
async def health():
    return {
        "ok": True,
        "model": CLAUDE_MODEL,
        "anthropic": bool(ANTHROPIC_API_KEY),
        "google_maps": bool(GOOGLE_MAPS_API_KEY),
    }


@app.post("/api/diagnose")
async def diagnose(req: DiagnoseRequest):
    logger.info("diagnose: request (image=%s, history=%d)", len(req.image or ""), len(req.history))
    if not req.image:
        raise HTTPException(status_code=400, detail="Image is required")
    if split_data_url(req.image) is None:
        raise HTTPException(status_code=400, detail="Image must be a base64 data URL")

    client = get_anthropic_client()
    if client is None:
        raise HTTPException(status_code=500, detail="Diagnosis model is not configured")

    try:
        stream = await client.messages.create(
            model=CLAUDE_MODEL,
            max_tokens=CLAUDE_RESPONSE_MAX_TOKENS,
            temperature=CLAUDE_TEMPERATURE,
            system=build_system_prompt(req.feedback, req.providers),
            messages=build_messages(req),
            stream=True,
        )
    except anthropic.APIError as e:
        logger.error("diagnose: model request failed: %s", e)
        raise HTTPException(status_code=502, detail="Failed to diagnose image")

    return StreamingResponse(_model_text(stream), media_type="text/plain; charset=utf-8")


@app.post("/api/geocode", response_model=GeocodeResponse)
async def geocode(req: GeocodeRequest):
    if not req.address and (req.lat is None or req.lng is None):
        raise HTTPException(status_code=400, detail="Address or coordinates are required")
    if not GOOGLE_MAPS_API_KEY:
        raise HTTPException(status_code=500, detail="Google Maps API key is not configured")

    async with httpx.AsyncClient(timeout=httpx.Timeout(GOOGLE_HTTP_TIMEOUT)) as client:
        if req.address:
            result = await geocode_address(client, req.address)
        else:
            result = await reverse_geocode(client, req.lat, req.lng)
    if result is None:
        raise HTTPException(status_code=400, detail="Failed to find location")
    return result


async def normalize_trade_query(trade: str) -> str:
    """Turn a free-text trade into a Maps search keyword, via Claude when available."""
    fallback = trade_keyword(trade)
    client = get_anthropic_client()
    if client is None:
        return fallback
    try:
        resp = await client.messages.create(
            model=CLAUDE_MODEL,
            max_tokens=30,
            temperature=0,
            messages=[{"role": "user", "content": TRADE_QUERY_PROMPT.format(trade=trade)}],
        )
    except anthropic.APIError as e:
        logger.warning("providers: trade normalization failed, using fallback: %s", e)
        return fallback
    raw = resp.content[0].text if resp.content else ""
    query = re.sub(r"[\"']", "", raw).strip()
    return query if len(query) > 2 else fallback


@app.post("/api/providers", response_model=ProviderSearchResponse)
async def providers(req: ProviderSearchRequest):
    if req.lat is None or req.lng is None or not req.trade:
        raise HTTPException(status_code=400, detail="Missing required parameters")
    if not GOOGLE_MAPS_API_KEY:
        raise HTTPException(status_code=500, detail="Google Maps API key is not configured")

    keyword = await normalize_trade_query(req.trade)
    logger.info("providers: searching %r near %.4f,%.4f", keyword, req.lat, req.lng)
    async with httpx.AsyncClient(timeout=httpx.Timeout(GOOGLE_HTTP_TIMEOUT)) as client:
        found = await find_providers(
            client,
            trade=req.trade,
            keyword=keyword,
            lat=req.lat,
            lng=req.lng,
            radius_m=req.radius or PROVIDER_SEARCH_RADIUS_M,
        )
    return ProviderSearchResponse(providers=found)

# Run: uvicorn homediag.server:app --reload
