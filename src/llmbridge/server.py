import json
import logging
import os
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from typing_extensions import TypedDict

from .config import configure_logging, default_config_dir, env_var_as_bool, load_config
from .errors import ErrorKind, LLMError, as_llm_error
from .network.transport import TimeoutController, run_with_timeout
from .services.manager import Manager, bootstrap_manager
from .types import ChatMessage, LLMRequest, MessageContext

logger = logging.getLogger(__name__)

STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.AUTH_FAILED: 401,
    ErrorKind.MODEL_NOT_FOUND: 404,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.QUOTA_EXCEEDED: 429,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CONNECTION_FAILED: 502,
    ErrorKind.CONTENT_FILTERED: 422,
}


def _parse_env_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class ChatBody(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list)
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    system_prompt: Optional[str] = None
    context: Optional[MessageContext] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    def to_request(self, *, stream: bool) -> LLMRequest:
        return LLMRequest(
            messages=self.messages,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            system_prompt=self.system_prompt,
            context=self.context,
            stream=stream,
        )


class ProviderSelection(BaseModel):
    provider_id: str


class _ErrorPayload(TypedDict):
    success: bool
    error: str
    code: str
    provider: str
    retryable: bool


def _error_payload(error: LLMError) -> _ErrorPayload:
    return {
        "success": False,
        "error": error.message,
        "code": error.code.value,
        "provider": error.provider,
        "retryable": error.retryable,
    }


def _error_response(error: LLMError) -> JSONResponse:
    status = STATUS_BY_KIND.get(error.code, 502)
    if error.provider == "manager":
        status = 503
    elif error.provider == "registry":
        status = 404
    return JSONResponse(_error_payload(error), status_code=status)


def _encode_event(event: str, payload: Any) -> bytes:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n".encode("utf-8")


def _manager(req: Request) -> Manager:
    return req.app.state.manager


def create_app(manager: Optional[Manager] = None, *, config_dir: Optional[str] = None) -> FastAPI:
    """Build the HTTP bridge.

    Without an explicit ``manager`` the configuration is loaded and every
    provider registered when the app starts, and cleaned up on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = manager is None
        if owned:
            configure_logging()
            loaded = load_config(config_dir or default_config_dir(), use_dummy=env_var_as_bool("LLMBRIDGE_USE_DUMMY"))
            app.state.manager = await bootstrap_manager(loaded)
        else:
            app.state.manager = manager
        logger.info("bridge started providers=%s", ",".join(app.state.manager.provider_ids()))
        try:
            yield
        finally:
            if owned:
                await app.state.manager.cleanup()
            logger.info("bridge stopped")

    app = FastAPI(title="llm-bridge", lifespan=lifespan)

    allowed_origins = _parse_env_list(os.environ.get("LLMBRIDGE_CORS_ALLOW_ORIGINS", ""))
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/healthz")
    async def healthz(req: Request) -> Dict[str, Any]:
        mgr = _manager(req)
        active = mgr.get_active_provider()
        return {
            "status": "ok",
            "state": mgr.state.value,
            "providers": mgr.provider_ids(),
            "active_provider": active.id if active else None,
            "fallback_provider": mgr.registry.fallback_provider_id,
        }

    @app.get("/v1/providers")
    async def list_providers(req: Request) -> Dict[str, Any]:
        statuses = await _manager(req).get_all_provider_statuses()
        return {"providers": {pid: status.model_dump() for pid, status in statuses.items()}}

    @app.put("/v1/providers/active")
    async def set_active(req: Request, body: ProviderSelection):
        try:
            _manager(req).set_active_provider(body.provider_id)
        except LLMError as exc:
            return _error_response(exc)
        return {"success": True, "active_provider": body.provider_id}

    @app.put("/v1/providers/fallback")
    async def set_fallback(req: Request, body: ProviderSelection):
        try:
            _manager(req).set_fallback_provider(body.provider_id)
        except LLMError as exc:
            return _error_response(exc)
        return {"success": True, "fallback_provider": body.provider_id}

    @app.get("/v1/models")
    async def list_models(req: Request) -> Dict[str, Any]:
        models = await _manager(req).get_all_models()
        return {
            "object": "list",
            "data": [m.model_dump(exclude_none=True) for pid in sorted(models) for m in models[pid]],
        }

    @app.post("/v1/chat")
    async def chat(req: Request, body: ChatBody):
        mgr = _manager(req)
        try:
            pending = mgr.chat(body.to_request(stream=False))
            if body.timeout_ms is not None:
                response = await run_with_timeout(pending, body.timeout_ms, "bridge")
            else:
                response = await pending
        except Exception as exc:
            error = as_llm_error(exc, "bridge", prefix="Chat failed")
            logger.error("chat request failed provider=%s code=%s error=%s", error.provider, error.code.value, error.message)
            return _error_response(error)
        return {
            "success": True,
            "response": response.content,
            "model": response.model,
            "usage": response.usage.model_dump() if response.usage else None,
            "finish_reason": response.finish_reason,
        }

    @app.post("/v1/chat/stream")
    async def chat_stream(req: Request, body: ChatBody) -> StreamingResponse:
        mgr = _manager(req)
        request = body.to_request(stream=True)

        async def event_source() -> AsyncIterator[bytes]:
            deadline = TimeoutController(body.timeout_ms, "bridge") if body.timeout_ms else None
            try:
                async with aclosing(mgr.stream(request)) as chunks:
                    while True:
                        # a read still pending at the deadline is cancelled
                        pending = anext(chunks, None)
                        chunk = await (deadline.run(pending) if deadline is not None else pending)
                        if chunk is None:
                            break
                        if chunk.done:
                            yield _encode_event("done", chunk.model_dump())
                        else:
                            yield _encode_event("chunk", {"content": chunk.content})
            except Exception as exc:
                error = as_llm_error(exc, "bridge", prefix="Streaming failed")
                logger.error(
                    "stream request failed provider=%s code=%s error=%s",
                    error.provider,
                    error.code.value,
                    error.message,
                )
                yield _encode_event("error", _error_payload(error))
            finally:
                if deadline is not None:
                    deadline.cancel()

        return StreamingResponse(event_source(), media_type="text/event-stream")

    return app


app = create_app()
