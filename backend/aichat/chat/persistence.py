"""对话与消息的持久化操作"""
import json
from typing import List, Optional

from ..db.adapter import StorageAdapter
from ..db.models import Conversation, Message, utcnow
from ..utils.structured_logger import get_logger
from .errors import ChatError, ConversationConflict, NotFound, PersistenceFailure
from .messages import serialize_parts
from .reconcile import ReconciliationPlan

logger = get_logger(__name__)


async def load_conversation(adapter: StorageAdapter, conversation_id: str) -> Optional[Conversation]:
    rows = await adapter.find_many("conversation", where={"id": conversation_id}, limit=1)
    return Conversation(**rows[0]) if rows else None


async def load_messages(adapter: StorageAdapter, conversation_id: str) -> List[Message]:
    """按 created_at 升序读取对话的全部消息"""
    rows = await adapter.find_many(
        "message",
        where={"conversation_id": conversation_id},
        sort_by=("created_at", "asc"),
    )
    return [Message(**row) for row in rows]


async def apply_plan(
    adapter: StorageAdapter,
    conversation_id: str,
    plan: ReconciliationPlan,
    expected_version: Optional[int] = None,
) -> Optional[Message]:
    """在一个事务中执行对账计划

    事务内依次：检查并递增对话版本号、删除多余消息、插入新的用户消息。
    任何一步失败，所有删除都会回滚。

    Returns:
        新插入的用户消息（没有插入时为 None）
    """

    async def _apply(tx: StorageAdapter) -> Optional[Message]:
        if expected_version is not None:
            rows = await tx.find_many("conversation", where={"id": conversation_id}, limit=1)
            if not rows:
                raise NotFound("对话不存在")
            current = rows[0].get("version") or 0
            if current != expected_version:
                raise ConversationConflict("对话已被其他请求修改，请重试")
            await tx.update("conversation", where={"id": conversation_id}, update={"version": current + 1})

        for msg in plan.to_delete:
            await tx.delete("message", where={"id": msg.id})

        if plan.to_insert_user is None:
            return None
        record = await tx.create("message", {
            "conversation_id": conversation_id,
            "role": "user",
            "content": serialize_parts(plan.to_insert_user),
            "created_at": utcnow(),
        })
        return Message(**record)

    try:
        inserted = await adapter.transaction(_apply)
    except ChatError:
        raise
    except Exception as e:
        logger.error("对账事务失败，已回滚", conversation_id=conversation_id, error=str(e), exc_info=True)
        raise PersistenceFailure("保存消息失败") from e

    logger.debug(
        "对账完成",
        conversation_id=conversation_id,
        kind=plan.kind.value,
        deleted=len(plan.to_delete),
        inserted=inserted is not None,
    )
    return inserted


async def save_assistant_reply(adapter: StorageAdapter, conversation_id: str, text: str) -> Message:
    """保存助手回复并刷新对话的 updated_at"""
    parts = [{"type": "text", "text": text}] if text else []
    record = await adapter.create("message", {
        "conversation_id": conversation_id,
        "role": "assistant",
        "content": json.dumps(parts, ensure_ascii=False, separators=(",", ":")),
        "created_at": utcnow(),
    })
    await adapter.update("conversation", where={"id": conversation_id}, update={"updated_at": utcnow()})
    return Message(**record)
