"""存储适配器接口

对话管线只依赖这里定义的最小接口：create / find_many / update / delete / transaction。
记录统一用 dict 表示，字段名与 models.py 中的 pydantic 模型保持一致。
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

Record = Dict[str, Any]
# (字段名, "asc" | "desc")
SortBy = Tuple[str, str]

T = TypeVar("T")

# 每个模型允许的字段
MODEL_FIELDS: Dict[str, Tuple[str, ...]] = {
    "conversation": ("id", "user_id", "title", "created_at", "updated_at", "version"),
    "message": ("id", "conversation_id", "role", "content", "created_at"),
}

# join 关系: (父模型, 子模型) -> 子模型上的外键
FOREIGN_KEYS: Dict[Tuple[str, str], str] = {
    ("conversation", "message"): "conversation_id",
}


class StorageError(Exception):
    """存储层错误（约束冲突、未知模型等）"""


def check_model(model: str) -> Tuple[str, ...]:
    fields = MODEL_FIELDS.get(model)
    if fields is None:
        raise StorageError(f"未知的模型: {model}")
    return fields


def check_fields(model: str, data: Record):
    fields = check_model(model)
    unknown = [key for key in data if key not in fields]
    if unknown:
        raise StorageError(f"模型 {model} 不存在字段: {', '.join(unknown)}")


def join_key(model: str, child: str) -> str:
    key = FOREIGN_KEYS.get((model, child))
    if key is None:
        raise StorageError(f"{model} 与 {child} 之间没有关联关系")
    return key


class StorageAdapter(Protocol):
    """文档存储适配器协议"""

    async def create(self, model: str, data: Record) -> Record:
        ...

    async def find_many(
        self,
        model: str,
        where: Optional[Record] = None,
        sort_by: Optional[SortBy] = None,
        limit: Optional[int] = None,
        join: Optional[Dict[str, bool]] = None,
    ) -> List[Record]:
        ...

    async def update(self, model: str, where: Record, update: Record) -> Optional[Record]:
        ...

    async def delete(self, model: str, where: Record) -> int:
        ...

    async def transaction(self, fn: Callable[["StorageAdapter"], Awaitable[T]]) -> T:
        """在一个原子事务中执行 fn(tx)；fn 抛出异常时所有写入回滚"""
        ...
