"""
FastAPI application: the chattap service entry point.

A screen reader (or anything else that can see the chat) posts what it
observes; the engine keeps the conversation window and asks the AI for
reply suggestions. Clients poll /v1/suggestions or tail the wire log.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chattap import __version__
from chattap.config import get_config
from chattap.engine import ChatEngine
from chattap.errors import SyncError
from chattap.models import Observation


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
engine: ChatEngine | None = None


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global engine

    cfg = get_config()
    _setup_logging(cfg)
    logger = logging.getLogger(__name__)

    engine = ChatEngine.from_config(cfg)
    engine.bind_loop()

    s_cfg = cfg.get("suggestions", {})
    b_cfg = s_cfg.get("backend", {})
    logger.info(
        "chattap started, listening on %s:%s, suggestions via %s (%s)",
        cfg.get("server", {}).get("host", "0.0.0.0"),
        cfg.get("server", {}).get("port", 8100),
        b_cfg.get("provider", "gemini"),
        b_cfg.get("model", ""),
    )
    logger.info("Persistence sync: %s", "enabled" if engine.client else "disabled")
    logger.info("Acceptance gate: %s", "required" if engine.acceptance_required else "off")
    logger.info("Wire log: %s", engine.wire.log_path if engine.wire else "disabled")

    yield

    engine.close()
    logger.info("chattap shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chattap",
    description="Watch the chat. Suggest the reply.",
    version=__version__,
    lifespan=lifespan,
)


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


@app.get("/health")
async def health():
    """Health check."""
    conv = engine.conversation if engine else None
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "active_chat": conv.contact_name if conv else None,
    })


@app.get("/v1/backend")
async def backend_status():
    """Reachability of the AI suggestion service."""
    backend = engine.coordinator.backend
    try:
        healthy = await backend.health_check()
        payload = {"name": backend.name, "healthy": healthy}
    except Exception as e:
        payload = {"name": backend.name, "healthy": False, "error": str(e)}
    return JSONResponse(payload)


@app.post("/v1/chats/{contact}/observations")
async def post_observations(contact: str, request: Request):
    """
    Feed what is on screen for a chat. Body is either a list of observations
    or {"observations": [...]}; each observation uses the Observation fields
    (camelCase or snake_case).
    """
    body = await _json_body(request)
    items = body.get("observations") if isinstance(body, dict) else body
    if not isinstance(items, list):
        return JSONResponse({"error": "expected a list of observations"}, status_code=400)

    try:
        observations = [Observation.from_dict(item) for item in items]
    except (AttributeError, TypeError, ValueError) as e:
        return JSONResponse({"error": f"bad observation: {e}"}, status_code=400)

    outcomes = engine.observe(contact, observations)
    return JSONResponse({
        "chat": contact,
        "outcomes": [o.value for o in outcomes],
        "chat_state": engine.chat_state(contact).value,
        "requesting_replies": engine.requesting_replies,
    })


@app.get("/v1/chats/active")
async def active_chat():
    """The active conversation: history, trigger state, suggestions."""
    return JSONResponse(engine.status())


@app.get("/v1/suggestions")
async def suggestions():
    conv = engine.conversation
    return JSONResponse({
        "chat": conv.contact_name if conv else None,
        "replies": engine.suggested_replies,
        "improved": engine.improved_suggestions,
        "requesting_replies": engine.requesting_replies,
        "improving_draft": engine.improving_draft,
    })


@app.post("/v1/suggestions/refresh")
async def refresh_suggestions(wait: bool = False):
    """Ask again for reply suggestions (only while the contact spoke last)."""
    future = engine.refresh_suggestions()
    if future is None:
        return JSONResponse({"requested": False})
    if wait:
        result = await future
        return JSONResponse({"requested": True, "result": result.to_dict()})
    return JSONResponse({"requested": True})


@app.post("/v1/draft")
async def draft(request: Request, wait: bool = False):
    """
    Update the user's draft. {"text": "...", "improve": true} also asks for
    improved versions; with ?wait=true the response carries the result.
    """
    body = await _json_body(request)
    if not isinstance(body, dict) or not isinstance(body.get("text", ""), str):
        return JSONResponse({"error": "expected {\"text\": ...}"}, status_code=400)

    text = body.get("text", "")
    if not body.get("improve", False):
        engine.update_draft(text)
        return JSONResponse({"draft": text, "requested": False})

    future = engine.improve_draft(text)
    payload = {"draft": text, "requested": future is not None}
    if future is not None and wait:
        result = await future
        payload["result"] = result.to_dict()
    return JSONResponse(payload)


@app.post("/v1/chats/{contact}/accept")
async def accept(contact: str):
    """Record acceptance of capture terms for a chat."""
    try:
        state = await engine.accept_chat(contact)
    except SyncError as e:
        status = e.status_code if e.status_code >= 400 else 502
        return JSONResponse({"error": str(e)}, status_code=status)
    return JSONResponse({"chat": contact, "chat_state": state.value})


@app.post("/v1/reset")
async def reset():
    engine.reset()
    return JSONResponse({"status": "reset"})


@app.post("/v1/logout")
async def logout():
    engine.logout()
    return JSONResponse({"status": "logged_out"})
