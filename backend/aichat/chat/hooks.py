"""授权 / 生命周期 / 错误 Hook

部署方继承 ChatHooks 并覆盖需要的方法即可；默认实现全部放行、什么也不做。
before_* 方法返回 Allow / Deny，Deny 会被转换为 403。
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Union

from ..db.models import Conversation, ConversationCreate, ConversationUpdate, ConversationWithMessages, Message
from ..utils.structured_logger import get_logger
from .errors import AuthorizationDenied

logger = get_logger(__name__)


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Deny:
    reason: Optional[str] = None


HookResult = Union[Allow, Deny]
ALLOW = Allow()


@dataclass
class ChatApiContext:
    """传给 Hook 和身份解析函数的请求上下文"""
    body: Any = None
    params: Dict[str, Any] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    request: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)


class ChatHooks:
    """Hook 集合（默认全部为空操作）"""

    # ============== 授权 Hook ==============

    async def before_chat(self, messages: List[Dict[str, str]], context: ChatApiContext) -> HookResult:
        """messages 为 [{"role": ..., "content": 纯文本}, ...]"""
        return ALLOW

    async def before_list_conversations(self, context: ChatApiContext) -> HookResult:
        return ALLOW

    async def before_get_conversation(self, conversation_id: str, context: ChatApiContext) -> HookResult:
        return ALLOW

    async def before_create_conversation(self, data: ConversationCreate, context: ChatApiContext) -> HookResult:
        return ALLOW

    async def before_update_conversation(
        self, conversation_id: str, data: ConversationUpdate, context: ChatApiContext
    ) -> HookResult:
        return ALLOW

    async def before_delete_conversation(self, conversation_id: str, context: ChatApiContext) -> HookResult:
        return ALLOW

    # ============== 生命周期 Hook ==============

    async def after_chat(self, conversation_id: str, messages: List[Message], context: ChatApiContext) -> None:
        pass

    async def conversations_read(self, conversations: List[Conversation], context: ChatApiContext) -> None:
        pass

    async def conversation_read(self, conversation: ConversationWithMessages, context: ChatApiContext) -> None:
        pass

    async def conversation_created(self, conversation: Conversation, context: ChatApiContext) -> None:
        pass

    async def conversation_updated(self, conversation: Conversation, context: ChatApiContext) -> None:
        pass

    async def conversation_deleted(self, conversation_id: str, context: ChatApiContext) -> None:
        pass

    # ============== 错误 Hook ==============

    async def on_chat_error(self, error: Exception, context: ChatApiContext) -> None:
        pass

    async def on_list_conversations_error(self, error: Exception, context: ChatApiContext) -> None:
        pass

    async def on_get_conversation_error(self, error: Exception, context: ChatApiContext) -> None:
        pass

    async def on_create_conversation_error(self, error: Exception, context: ChatApiContext) -> None:
        pass

    async def on_update_conversation_error(self, error: Exception, context: ChatApiContext) -> None:
        pass

    async def on_delete_conversation_error(self, error: Exception, context: ChatApiContext) -> None:
        pass


async def authorize(decision: Awaitable[HookResult], denied_message: str):
    """执行 before Hook，Deny 时抛出 AuthorizationDenied"""
    result = await decision
    if isinstance(result, Deny) or result is False:
        reason = result.reason if isinstance(result, Deny) else None
        raise AuthorizationDenied(reason or denied_message)


async def notify(call: Awaitable[None], hook_name: str):
    """执行生命周期 / 错误 Hook；Hook 自身的异常只记录日志，不向外传播"""
    try:
        await call
    except Exception as e:
        logger.error("Hook 执行失败", hook=hook_name, error=str(e), exc_info=True)
