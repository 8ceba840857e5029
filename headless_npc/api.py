from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Literal

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field, model_validator

from .app import AppContainer, build_container
from .common import now_ms
from .config import Settings
from .errors import NpcError
from .models import ChatMessage, Session
from .persona.runtime import build_persona_highlights
from .services.llm_client import LLMClient
from .services.sse import format_sse_event
from .storage.base import SessionStore

logger = logging.getLogger("headless_npc.api")


class IncomingMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatBody(BaseModel):
    sessionId: str | None = None
    characterId: str | None = None
    languageCode: str | None = None
    messages: list[IncomingMessage] = Field(min_length=1)
    stream: bool | None = None

    @model_validator(mode="after")
    def _require_target(self) -> "ChatBody":
        if not self.sessionId and not self.characterId:
            raise ValueError("Either sessionId or characterId is required")
        return self


class ActivateBody(BaseModel):
    sessionId: str | None = None
    languageCode: str | None = None


class ImageBody(BaseModel):
    sessionId: str | None = None
    characterId: str | None = None
    prompt: str | None = None
    intent: Literal["avatar", "scene"] = "avatar"
    avatarMood: str | None = None
    ratio: Literal["1:1", "16:9", "4:3"] | None = None
    useImagePrompt: bool = False
    updateAvatar: bool = False

    @model_validator(mode="after")
    def _require_target(self) -> "ImageBody":
        if not self.sessionId and not self.characterId:
            raise ValueError("Either sessionId or characterId is required")
        return self


class SelectAvatarBody(BaseModel):
    avatarId: str


class MemorySearchBody(BaseModel):
    characterId: str
    query: str


def get_container(request: Request) -> AppContainer:
    return request.app.state.container


def require_api_key(request: Request, x_api_key: str | None = Header(default=None)) -> None:
    expected = request.app.state.settings.gateway_key
    if expected and x_api_key != expected:
        raise _Unauthorized()


class _Unauthorized(Exception):
    pass


def _session_summary(session: Session, message_limit: int = 20) -> dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "characterId": session.character_id,
        "languageCode": session.language_code,
        "characterState": session.character_state.to_dict(),
        "personaId": session.persona_id,
        "personaRuntime": session.persona_runtime,
        "personaHighlights": build_persona_highlights(session.persona_runtime),
        "version": session.version,
        "createdAt": session.created_at,
        "updatedAt": session.updated_at,
        "messages": [message.to_dict() for message in session.messages[-message_limit:]],
    }


def _incoming(body: ChatBody) -> list[ChatMessage]:
    return [ChatMessage(role=item.role, content=item.content) for item in body.messages]


async def _turn_events(
    container: AppContainer,
    session: Session,
    incoming: list[ChatMessage],
    inflight: set[asyncio.Task[None]],
) -> AsyncIterator[str]:
    queue: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue()

    async def run() -> None:
        try:
            result = await container.chat.handle_turn(
                session,
                incoming,
                stream=True,
                on_chunk=lambda text: queue.put_nowait(("chunk", text)),
            )
            queue.put_nowait(("final", json.dumps(result.to_payload(), ensure_ascii=False)))
            queue.put_nowait(("end", ""))
        except asyncio.CancelledError:
            raise
        except NpcError as exc:
            logger.warning("[api.stream] turn failed for %s: %s", session.session_id, exc)
            queue.put_nowait(("error", json.dumps({"error": type(exc).__name__, "message": str(exc)})))
            queue.put_nowait(("end", ""))
        except Exception:
            logger.exception("[api.stream] unexpected failure for %s", session.session_id)
            queue.put_nowait(("error", json.dumps({"error": "InternalError", "message": "Internal server error"})))
            queue.put_nowait(("end", ""))
        finally:
            queue.put_nowait(None)

    # The turn keeps running when the client goes away; the task is held until it finishes.
    task = asyncio.create_task(run())
    inflight.add(task)
    task.add_done_callback(inflight.discard)

    while True:
        item = await queue.get()
        if item is None:
            break
        yield format_sse_event(*item)


def build_router() -> APIRouter:
    router = APIRouter(dependencies=[Depends(require_api_key)])

    @router.get("/api/characters")
    async def list_characters(
        languageCode: str | None = None,
        container: AppContainer = Depends(get_container),
    ) -> list[dict[str, Any]]:
        characters = container.characters.list_characters(languageCode)
        if languageCode:
            wanted = languageCode.strip().lower().replace("_", "-")
            accepted = {wanted, wanted.split("-")[0]}
            characters = [item for item in characters if accepted & set(item["languages"])]
        return characters

    @router.post("/api/characters/{character_id}/activate")
    async def activate_character(
        character_id: str,
        body: ActivateBody | None = None,
        container: AppContainer = Depends(get_container),
    ) -> dict[str, Any]:
        body = body or ActivateBody()
        container.characters.get_or_raise(character_id)
        session = await container.sessions.get_or_create(
            session_id=body.sessionId,
            character_id=character_id,
            language_code=body.languageCode,
        )
        return {
            "sessionId": session.session_id,
            "characterId": session.character_id,
            "languageCode": session.language_code,
            "characterState": session.character_state.to_dict(),
            "personaHighlights": build_persona_highlights(session.persona_runtime),
            "initialMessages": [message.to_dict() for message in session.messages[-3:]],
        }

    @router.post("/api/npc/chat")
    async def chat(body: ChatBody, container: AppContainer = Depends(get_container)) -> dict[str, Any]:
        session = await container.sessions.get_or_create(
            session_id=body.sessionId,
            character_id=body.characterId,
            language_code=body.languageCode,
        )
        result = await container.chat.handle_turn(session, _incoming(body), stream=False)
        return result.to_payload()

    @router.post("/api/npc/chat/stream")
    async def chat_stream(
        request: Request,
        body: ChatBody,
        container: AppContainer = Depends(get_container),
    ) -> StreamingResponse:
        session = await container.sessions.get_or_create(
            session_id=body.sessionId,
            character_id=body.characterId,
            language_code=body.languageCode,
        )
        return StreamingResponse(
            _turn_events(container, session, _incoming(body), request.app.state.stream_tasks),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @router.get("/api/npc/sessions/{session_id}")
    async def get_session(session_id: str, container: AppContainer = Depends(get_container)) -> dict[str, Any]:
        session = await container.sessions.require(session_id)
        return _session_summary(session)

    @router.get("/api/npc/sessions/{session_id}/messages")
    async def list_messages(
        session_id: str,
        limit: int = Query(default=50),
        cursor: str | None = None,
        container: AppContainer = Depends(get_container),
    ) -> dict[str, Any]:
        page = await container.sessions.list_messages(session_id, limit=limit, cursor=cursor)
        return page.to_dict()

    @router.delete("/api/npc/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_session(session_id: str, container: AppContainer = Depends(get_container)) -> Response:
        await container.sessions.delete(session_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.post("/api/npc/images")
    async def generate_image(body: ImageBody, container: AppContainer = Depends(get_container)) -> dict[str, Any]:
        session = await container.sessions.get_or_create(session_id=body.sessionId, character_id=body.characterId)
        result = await container.images.handle_generation(
            session,
            prompt=body.prompt,
            intent=body.intent,
            avatar_mood=body.avatarMood,
            ratio=body.ratio,
            use_image_prompt=body.useImagePrompt,
            update_avatar=body.updateAvatar,
        )
        return {
            "sessionId": result.session.session_id,
            "imageUrl": result.image_url,
            "imagePrompt": result.prompt,
            "characterState": result.session.character_state.to_dict(),
            "sessionVersion": result.session.version,
            "avatar": result.avatar.to_dict() if result.avatar else None,
        }

    @router.get("/api/npc/avatars")
    async def list_avatars(
        characterId: str | None = None,
        includeGlobal: bool = True,
        container: AppContainer = Depends(get_container),
    ) -> list[dict[str, Any]]:
        avatars = await container.avatars.list_avatars(characterId, includeGlobal)
        return [avatar.to_dict() for avatar in avatars]

    @router.post("/api/npc/sessions/{session_id}/avatar")
    async def select_avatar(
        session_id: str,
        body: SelectAvatarBody,
        container: AppContainer = Depends(get_container),
    ) -> dict[str, Any]:
        avatar = await container.avatars.get_avatar_or_raise(body.avatarId)
        session = await container.sessions.update_avatar(session_id, avatar.id, avatar.image_url, avatar.status_label)
        return {
            "sessionId": session.session_id,
            "characterState": session.character_state.to_dict(),
            "sessionVersion": session.version,
        }

    @router.post("/api/memory/search")
    async def search_memory(body: MemorySearchBody, container: AppContainer = Depends(get_container)) -> dict[str, Any]:
        entries = await container.memory.search(body.characterId, body.query)
        return {"items": [entry.to_dict() for entry in entries]}

    @router.get("/api/npc/memory-stream")
    async def memory_stream(
        characterId: str | None = None,
        sessionId: str | None = None,
        limit: int = Query(default=50, ge=1, le=200),
        offset: int = Query(default=0, ge=0),
        container: AppContainer = Depends(get_container),
    ) -> dict[str, Any]:
        total, entries = await container.memory.list_entries(characterId, sessionId, limit, offset)
        return {"total": total, "limit": limit, "offset": offset, "items": [entry.to_dict() for entry in entries]}

    return router


def create_app(
    settings: Settings | None = None,
    *,
    store: SessionStore | None = None,
    llm: LLMClient | None = None,
) -> FastAPI:
    """Build the HTTP app. The container is built on startup; `store` and `llm` override the configured ones."""
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.container = await build_container(settings, store=store, llm=llm)
        try:
            yield
        finally:
            if app.state.stream_tasks:
                await asyncio.gather(*list(app.state.stream_tasks), return_exceptions=True)
            await app.state.container.close()

    app = FastAPI(title="Headless NPC backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.stream_tasks = set()

    @app.exception_handler(NpcError)
    async def _npc_error(request: Request, exc: NpcError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("[api.error] %s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc)
        return JSONResponse(status_code=exc.status_code, content={"error": type(exc).__name__, "message": str(exc)})

    @app.exception_handler(_Unauthorized)
    async def _unauthorized(request: Request, exc: _Unauthorized) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "UNAUTHORIZED"})

    @app.get("/health")
    @app.get("/api/health")
    async def health(request: Request) -> dict[str, Any]:
        current: AppContainer = request.app.state.container
        db_ok = True
        try:
            await current.store.ping()
        except Exception as exc:
            logger.warning("[api.health] store ping failed: %s", exc)
            db_ok = False
        return {
            "status": "ok" if db_ok else "degraded",
            "backend": current.store.backend_name,
            "db": db_ok,
            "timestamp": now_ms(),
        }

    app.include_router(build_router())
    return app
