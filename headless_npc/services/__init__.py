from .avatar_service import AvatarService
from .chat_service import ChatService, TurnResult
from .image_service import ImageResult, ImageService
from .llm_client import LLMClient, parse_ai_response
from .memory_service import MemoryService
from .session_service import SessionService
from .sse import SSEStreamAggregator

__all__ = [
    "AvatarService",
    "ChatService",
    "ImageResult",
    "ImageService",
    "LLMClient",
    "MemoryService",
    "SSEStreamAggregator",
    "SessionService",
    "TurnResult",
    "parse_ai_response",
]
