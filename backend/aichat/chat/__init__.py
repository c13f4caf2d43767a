"""聊天管线 - 消息规范化、对账、持久化与流式响应"""
from .errors import (
    AuthorizationDenied,
    ChatError,
    ConversationConflict,
    NotFound,
    PersistenceFailure,
    PostCompletionError,
    ValidationError,
)
from .hooks import ALLOW, Allow, ChatApiContext, ChatHooks, Deny
from .modes import ChatMode
from .pipeline import ChatPipeline, ChatPipelineSettings, ChatTurn
from .schemas import ChatRequest

__all__ = [
    'ALLOW',
    'Allow',
    'AuthorizationDenied',
    'ChatApiContext',
    'ChatError',
    'ChatHooks',
    'ChatMode',
    'ChatPipeline',
    'ChatPipelineSettings',
    'ChatRequest',
    'ChatTurn',
    'ConversationConflict',
    'Deny',
    'NotFound',
    'PersistenceFailure',
    'PostCompletionError',
    'ValidationError',
]
