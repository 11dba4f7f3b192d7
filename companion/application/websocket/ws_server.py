from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError
from typing import Optional
from datetime import datetime, timezone
import structlog

from companion.config.settings import Settings, get_settings
from companion.domain.context.context_gate import PageContextProvider
from companion.domain.errors import InvalidCredentialError, TurnInProgressError
from companion.domain.models.conversation import TurnResult
from companion.domain.orchestration.session import ConversationSession
from companion.domain.response.speech import to_speakable
from companion.domain.streaming.status_handler import TurnStatusHandler
from companion.infrastructure.observability.logging import metrics, setup_logging
from companion.infrastructure.page.page_extractor import (
    HtmlPageContext, StaticPageContext, UrlPageContext
)
from .connection_manager import ConnectionManager
from .schema.events import EventType, PageData, UserMessage

logger = structlog.get_logger(__name__)


class ChatRequest(BaseModel):
    content: str = Field(min_length=1)
    page: Optional[PageData] = None


class CredentialRequest(BaseModel):
    key: str


class MessageResponse(BaseModel):
    message: str


def build_page_provider(page: Optional[PageData], settings: Settings) -> Optional[PageContextProvider]:
    """Pick the extraction collaborator for whatever the client sent"""

    if page is None:
        return None

    options = {
        "blocked_schemes": settings.blocked_page_schemes,
        "max_chars": settings.context_char_limit,
    }
    if page.text is not None:
        return StaticPageContext(page.text, url=page.url, **options)
    if page.html is not None:
        return HtmlPageContext(page.html, url=page.url, **options)
    if page.url and page.fetch:
        if not settings.allow_page_fetch:
            logger.warning("Page fetch requested but disabled", url=page.url)
            return None
        return UrlPageContext(page.url, timeout=settings.page_fetch_timeout, **options)
    return None


def create_app(
    session: Optional[ConversationSession] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the companion server around one conversation session"""

    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format, environment=settings.app_env)

    app = FastAPI(title="Companion Conversation Server")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.session = session or ConversationSession.from_settings(settings)
    app.state.connection_manager = ConnectionManager()

    @app.websocket("/ws/companion/{connection_id}")
    async def companion_websocket(websocket: WebSocket, connection_id: str):
        """Main WebSocket endpoint for voice turns"""

        connection_manager: ConnectionManager = app.state.connection_manager
        conversation: ConversationSession = app.state.session

        await connection_manager.connect(websocket, connection_id)
        status_handler = TurnStatusHandler(
            connection_manager, connection_id, conversation.state_manager
        )

        try:
            while True:
                data = await websocket.receive_json()
                event_type = data.get("type") if isinstance(data, dict) else None

                if event_type == EventType.USER_MESSAGE:
                    try:
                        message = UserMessage.model_validate({**data, "type": EventType.USER_MESSAGE})
                    except ValidationError as e:
                        await connection_manager.send_error(
                            connection_id, f"Invalid user message: {e.errors()[0]['msg']}", "invalid_message"
                        )
                        continue

                    try:
                        result = await conversation.process_utterance(
                            message.content,
                            page=build_page_provider(message.page, settings),
                            on_update=status_handler.handle_update,
                        )
                    except TurnInProgressError as e:
                        await connection_manager.send_error(connection_id, str(e), "turn_in_progress")
                        continue
                    except ValueError as e:
                        await connection_manager.send_error(connection_id, str(e), "invalid_message")
                        continue

                    await status_handler.send_reply(result)

                elif event_type == EventType.RESET_MEMORY:
                    text = await conversation.reset_memory()
                    await status_handler.send_reply(TurnResult(text=text, speakable=to_speakable(text)))

                else:
                    await connection_manager.send_error(
                        connection_id, f"Unsupported event type: {event_type}", "unsupported_event"
                    )

        except WebSocketDisconnect:
            logger.info("Client disconnected", connection_id=connection_id)
        finally:
            await connection_manager.disconnect(connection_id)

    @app.post("/api/v1/chat", response_model=TurnResult)
    async def chat_endpoint(body: ChatRequest, request: Request):
        conversation: ConversationSession = request.app.state.session
        try:
            return await conversation.process_utterance(
                body.content,
                page=build_page_provider(body.page, request.app.state.settings),
            )
        except TurnInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.post("/api/v1/credential", response_model=MessageResponse)
    async def credential_endpoint(body: CredentialRequest, request: Request):
        conversation: ConversationSession = request.app.state.session
        try:
            message = await conversation.register_credential(body.key)
        except InvalidCredentialError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return MessageResponse(message=message)

    @app.post("/api/v1/memory/reset", response_model=MessageResponse)
    async def reset_endpoint(request: Request):
        conversation: ConversationSession = request.app.state.session
        return MessageResponse(message=await conversation.reset_memory())

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        conversation: ConversationSession = request.app.state.session
        return {
            "status": "healthy",
            "active_connections": len(request.app.state.connection_manager.active_connections),
            "conversation": await conversation.state_manager.get_current_state(),
            "metrics": metrics.get_metrics_summary(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


def main():
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
