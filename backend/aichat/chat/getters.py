"""服务端直接读取对话的函数（不经过 Hook，也不需要 HTTP 上下文）"""
from typing import List, Optional

from ..db.adapter import StorageAdapter
from ..db.models import Conversation, ConversationWithMessages, Message


async def get_all_conversations(adapter: StorageAdapter, user_id: Optional[str] = None) -> List[Conversation]:
    """按 updated_at 倒序读取全部对话，传入 user_id 时只返回该用户的对话"""
    rows = await adapter.find_many(
        "conversation",
        where={"user_id": user_id} if user_id else None,
        sort_by=("updated_at", "desc"),
    )
    return [Conversation(**row) for row in rows]


async def get_conversation_by_id(adapter: StorageAdapter, conversation_id: str) -> Optional[ConversationWithMessages]:
    """读取对话及其全部消息（消息按 created_at 升序），不存在时返回 None"""
    rows = await adapter.find_many(
        "conversation",
        where={"id": conversation_id},
        limit=1,
        join={"message": True},
    )
    if not rows:
        return None

    row = dict(rows[0])
    messages = [Message(**m) for m in row.pop("message", None) or []]
    # sorted 是稳定排序，时间戳相同的消息保持存储顺序
    messages = sorted(messages, key=lambda m: m.created_at)
    return ConversationWithMessages(**row, messages=messages)
