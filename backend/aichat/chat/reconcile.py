"""对账引擎

客户端每一轮都会提交完整的消息列表。在请求模型之前，需要让数据库中的历史与
客户端声称的历史保持一致：

- 新消息：最后一条是数据库里没有的用户消息 → 插入
- 重新生成：最后一条用户消息与数据库中最近的用户消息内容相同 → 删除其后的旧回复
- 编辑历史：客户端修改了更早的消息并丢弃了之后的部分 → 删除编辑点之后的全部消息并插入

用户消息是否"相同"只比较序列化后的内容，不比较ID。
纯计算，不做任何 I/O。
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from ..db.models import Message
from .messages import UIMessage, serialize_parts

PERSISTED_ROLES = ("user", "assistant")


class TurnKind(str, Enum):
    NEW_TURN = "new_turn"
    REGENERATE = "regenerate"
    RESYNC = "resync"


@dataclass
class ReconciliationPlan:
    """对账结果：需要删除的消息和需要插入的用户消息"""
    kind: TurnKind
    expected_db_count: int
    to_delete: List[Message] = field(default_factory=list)
    to_insert_user: Optional[UIMessage] = None

    @property
    def is_noop(self) -> bool:
        return not self.to_delete and self.to_insert_user is None


def plan_reconciliation(ui_messages: Sequence[UIMessage], stored: Sequence[Message]) -> ReconciliationPlan:
    """计算使数据库与客户端消息列表一致所需的最少删除/插入

    Args:
        ui_messages: 客户端本轮提交的完整消息列表（至少一条用户或助手消息）
        stored: 数据库中该对话已有的消息（按 created_at 升序）
    """
    # system / data 消息不落库，不参与计数
    persisted = [m for m in ui_messages if m.role in PERSISTED_ROLES]
    if not persisted:
        raise ValueError("ui_messages 中没有用户或助手消息")

    last = persisted[-1]
    to_insert = None

    if last.role != "user":
        # 客户端末尾不是用户消息（少见），只做截断
        kind = TurnKind.RESYNC
        expected = len(persisted)
    else:
        last_stored_user = next((m for m in reversed(stored) if m.role == "user"), None)
        if last_stored_user is not None and last_stored_user.content == serialize_parts(last):
            kind = TurnKind.REGENERATE
            expected = len(persisted)
        else:
            kind = TurnKind.NEW_TURN
            expected = len(persisted) - 1
            to_insert = last

    return ReconciliationPlan(
        kind=kind,
        expected_db_count=expected,
        to_delete=list(stored[expected:]),
        to_insert_user=to_insert,
    )
