"""内存存储适配器（开发环境和测试使用）"""
import asyncio
import copy
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from .adapter import Record, SortBy, StorageError, check_fields, check_model, join_key

T = TypeVar("T")


class MemoryAdapter:
    """基于 dict 的存储适配器

    事务通过快照实现：进入事务时复制所有表，fn 抛出异常时整体恢复。
    同一时刻只允许一个事务执行。
    """

    def __init__(self):
        self._tables: Dict[str, List[Record]] = {"conversation": [], "message": []}
        self._tx_lock = asyncio.Lock()

    @staticmethod
    def _matches(record: Record, where: Optional[Record]) -> bool:
        if not where:
            return True
        return all(record.get(field) == value for field, value in where.items())

    async def create(self, model: str, data: Record) -> Record:
        check_fields(model, data)
        record = dict(data)
        if not record.get("id"):
            record["id"] = uuid.uuid4().hex
        table = self._tables[model]
        if any(existing["id"] == record["id"] for existing in table):
            raise StorageError(f"{model} 主键冲突: {record['id']}")
        table.append(record)
        return dict(record)

    async def find_many(
        self,
        model: str,
        where: Optional[Record] = None,
        sort_by: Optional[SortBy] = None,
        limit: Optional[int] = None,
        join: Optional[Dict[str, bool]] = None,
    ) -> List[Record]:
        check_model(model)
        rows = [dict(r) for r in self._tables[model] if self._matches(r, where)]

        if sort_by:
            field, direction = sort_by
            # 与 SQLite 的 rowid 次序一致：升序时相同值按插入顺序，降序时整体反转
            rows.sort(key=lambda r: r.get(field))
            if direction == "desc":
                rows.reverse()

        if limit is not None:
            rows = rows[:limit]

        for child, enabled in (join or {}).items():
            if not enabled:
                continue
            key = join_key(model, child)
            for row in rows:
                row[child] = [dict(c) for c in self._tables[child] if c.get(key) == row["id"]]

        return rows

    async def update(self, model: str, where: Record, update: Record) -> Optional[Record]:
        check_fields(model, update)
        updated = None
        for record in self._tables[model]:
            if self._matches(record, where):
                record.update(update)
                updated = dict(record)
        return updated

    async def delete(self, model: str, where: Record) -> int:
        check_model(model)
        table = self._tables[model]
        kept = [r for r in table if not self._matches(r, where)]
        removed = len(table) - len(kept)
        self._tables[model] = kept

        # 级联删除子记录
        if model == "conversation" and removed:
            removed_ids = {r["id"] for r in table if self._matches(r, where)}
            self._tables["message"] = [
                m for m in self._tables["message"] if m["conversation_id"] not in removed_ids
            ]
        return removed

    async def transaction(self, fn: Callable[["MemoryAdapter"], Awaitable[T]]) -> T:
        async with self._tx_lock:
            snapshot = copy.deepcopy(self._tables)
            try:
                return await fn(self)
            except BaseException:
                self._tables = snapshot
                raise
