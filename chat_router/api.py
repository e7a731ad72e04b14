"""
REST API обёртка для Chat Router.

Эндпоинты:
  GET  /health
  POST /api/v1/route          -> RouteResponse (буферизованный fallback)
  POST /api/v1/route/stream   -> text/event-stream: data: <json> ... data: [DONE]

Запуск: API_KEY=<secret> uvicorn chat_router.api:app --host 127.0.0.1 --port 8000
"""

import hmac
import os
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from chat_router.business_loader import UnknownBusinessError
from chat_router.logger import logger
from chat_router.models import ChatMessage, MessageRole
from chat_router.router import ChatRouter
from chat_router.settings import settings

API_KEY = os.environ.get(settings.api.api_key_env or "API_KEY", "change-me-in-production")

_router: Optional[ChatRouter] = None


# ── Error helpers ──────────────────────────────────────

class APIError(Exception):
    """Structured API exception with HTTP status code."""

    def __init__(self, status_code: int, code: str, message: str):
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(message)


def _error_payload(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


# ── Auth ──────────────────────────────────────────────

def verify_api_key(authorization: str = Header(None)):
    """Проверка Bearer-токена."""
    if not authorization or not authorization.startswith("Bearer "):
        raise APIError(401, "UNAUTHORIZED", "Missing Bearer token")
    token = authorization[7:]
    if not hmac.compare_digest(token, API_KEY):
        raise APIError(401, "UNAUTHORIZED", "Invalid API key")


# ── App ───────────────────────────────────────────────

def get_router() -> ChatRouter:
    if _router is None:
        raise APIError(503, "NOT_READY", "Router is not initialized")
    return _router


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _router
    if API_KEY == "change-me-in-production":
        logger.warning("API_KEY is set to insecure default value")
    _router = ChatRouter.from_settings()
    logger.info("Chat router initialized", businesses=_router.registry.ids())
    yield
    _router = None


app = FastAPI(title="Chat Router API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(APIError)
async def api_error_handler(_: Request, exc: APIError):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.code, exc.message),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    first_error = errors[0].get("msg") if errors else "Invalid request payload"
    return JSONResponse(
        status_code=422,
        content=_error_payload("VALIDATION_ERROR", first_error),
    )


# ── Models ────────────────────────────────────────────

class HistoryMessage(BaseModel):
    role: MessageRole
    content: str


class RouteRequest(BaseModel):
    current_message: str = Field(..., min_length=1)
    history: List[HistoryMessage] = Field(default_factory=list)
    business_id: Optional[str] = None
    conversation_id: Optional[str] = None

    def chat_history(self) -> List[ChatMessage]:
        return [ChatMessage(role=m.role, content=m.content) for m in self.history]


def _resolve_business(router: ChatRouter, business_id: Optional[str]) -> str:
    try:
        return router.registry.get(business_id).id
    except UnknownBusinessError as err:
        raise APIError(404, "UNKNOWN_BUSINESS", str(err)) from err


# ── Endpoints ─────────────────────────────────────────

@app.get("/health")
def health():
    businesses = _router.registry.ids() if _router is not None else []
    return {"status": "ok", "businesses": businesses}


@app.post("/api/v1/route", dependencies=[Depends(verify_api_key)])
def route_message(req: RouteRequest, router: ChatRouter = Depends(get_router)) -> Dict[str, Any]:
    """
    Маршрутизация одного сообщения.

    NOTE: `def` (не `async def`) — буферизованный fallback синхронный (requests).
    FastAPI автоматически запустит в threadpool.
    """
    if not req.current_message.strip():
        raise APIError(422, "VALIDATION_ERROR", "current_message must not be empty")
    business_id = _resolve_business(router, req.business_id)

    if req.conversation_id:
        logger.set_conversation(req.conversation_id)
    logger.set_context(business_id=business_id)
    try:
        result = router.route(req.current_message, req.chat_history(), business_id=business_id)
        return result.to_dict()
    except APIError:
        raise
    except Exception as err:
        logger.exception("Error routing message")
        raise APIError(500, "INTERNAL", "Internal server error") from err
    finally:
        logger.clear_context()
        if req.conversation_id:
            logger.clear_conversation()


async def sse_events(router: ChatRouter, req: RouteRequest, business_id: str) -> AsyncIterator[str]:
    """Строки SSE. Закрытие генератора закрывает поток роутера и бэкенда."""
    if req.conversation_id:
        logger.set_conversation(req.conversation_id)
    logger.set_context(business_id=business_id)
    stream = router.route_stream(req.current_message, req.chat_history(), business_id=business_id)
    try:
        async with aclosing(stream):
            async for event in stream:
                yield event.to_sse()
    finally:
        logger.clear_context()
        if req.conversation_id:
            logger.clear_conversation()


@app.post("/api/v1/route/stream", dependencies=[Depends(verify_api_key)])
async def route_message_stream(req: RouteRequest, router: ChatRouter = Depends(get_router)):
    """SSE: trace первым, затем content-дельты, затем [DONE]."""
    if not req.current_message.strip():
        raise APIError(422, "VALIDATION_ERROR", "current_message must not be empty")
    business_id = _resolve_business(router, req.business_id)
    return StreamingResponse(
        sse_events(router, req, business_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
