"""运行模式与用户身份解析"""
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from .errors import AuthorizationDenied

UserIdResolver = Callable[[Any], Union[Optional[str], Awaitable[Optional[str]]]]


class ChatMode(str, Enum):
    """聊天模式

    - PERSISTENT（authenticated）: 对话持久化，可按用户隔离
    - STATELESS（public）: 不读写任何对话/消息，也不解析用户身份
    """
    PERSISTENT = "authenticated"
    STATELESS = "public"


async def resolve_user_id(
    mode: ChatMode,
    resolver: Optional[UserIdResolver],
    context: Any,
) -> Optional[str]:
    """解析当前请求的用户ID

    未配置 resolver 时返回 None：对话不按用户隔离，所有持久化模式的调用方都能看到。
    配置了 resolver 但返回空值时视为未认证。
    """
    if mode is ChatMode.STATELESS or resolver is None:
        return None

    user_id = resolver(context)
    if inspect.isawaitable(user_id):
        user_id = await user_id
    if not user_id:
        raise AuthorizationDenied("未授权：需要用户认证")
    return user_id
