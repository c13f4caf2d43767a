"""数据库连接和操作（aiosqlite 存储适配器）"""
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar
import sqlite3
import uuid

import aiosqlite

from .adapter import Record, SortBy, StorageError, check_fields, check_model, join_key
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DATETIME_FIELDS = {"created_at", "updated_at"}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS conversation (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        title TEXT NOT NULL DEFAULT '新对话',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES conversation(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    # 创建索引以加速查询
    "CREATE INDEX IF NOT EXISTS idx_conversation_user_id ON conversation(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_conversation_updated_at ON conversation(updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_message_conversation ON message(conversation_id, created_at)",
]


def _to_db(data: Record) -> Record:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in data.items()}


def _from_db(row: aiosqlite.Row) -> Record:
    record = dict(row)
    for field in record.keys() & DATETIME_FIELDS:
        if record[field] is not None:
            record[field] = datetime.fromisoformat(record[field])
    return record


def _where_clause(where: Optional[Record]):
    if not where:
        return "", []
    clauses = []
    params = []
    for field, value in where.items():
        if value is None:
            clauses.append(f"{field} IS NULL")
        else:
            clauses.append(f"{field} = ?")
            params.append(value.isoformat() if isinstance(value, datetime) else value)
    return " WHERE " + " AND ".join(clauses), params


class _SqliteOps:
    """绑定到单个连接的 CRUD 操作（不负责提交）"""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, model: str, data: Record) -> Record:
        check_fields(model, data)
        record = dict(data)
        if not record.get("id"):
            record["id"] = uuid.uuid4().hex
        row = _to_db(record)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            await self.db.execute(
                f"INSERT INTO {model} ({columns}) VALUES ({placeholders})",
                list(row.values()),
            )
        except sqlite3.IntegrityError as e:
            raise StorageError(f"{model} 写入失败: {e}") from e
        found = await self.find_many(model, where={"id": record["id"]}, limit=1)
        return found[0]

    async def find_many(
        self,
        model: str,
        where: Optional[Record] = None,
        sort_by: Optional[SortBy] = None,
        limit: Optional[int] = None,
        join: Optional[Dict[str, bool]] = None,
    ) -> List[Record]:
        fields = check_model(model)
        if where:
            check_fields(model, where)
        clause, params = _where_clause(where)
        query = f"SELECT {', '.join(fields)} FROM {model}{clause}"

        if sort_by:
            field, direction = sort_by
            check_fields(model, {field: None})
            order = "DESC" if direction == "desc" else "ASC"
            # rowid 保证相同时间戳按插入顺序
            query += f" ORDER BY {field} {order}, rowid {order}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = await self.db.execute(query, params)
        rows = [_from_db(row) for row in await cursor.fetchall()]

        for child, enabled in (join or {}).items():
            if not enabled:
                continue
            key = join_key(model, child)
            for row in rows:
                row[child] = await self.find_many(child, where={key: row["id"]})
        return rows

    async def update(self, model: str, where: Record, update: Record) -> Optional[Record]:
        check_fields(model, update)
        check_fields(model, where)
        if not update:
            found = await self.find_many(model, where=where, limit=1)
            return found[0] if found else None

        values = _to_db(update)
        assignments = ", ".join(f"{field} = ?" for field in values)
        clause, params = _where_clause(where)
        cursor = await self.db.execute(
            f"UPDATE {model} SET {assignments}{clause}",
            list(values.values()) + params,
        )
        if cursor.rowcount == 0:
            return None

        # 更新后以主键重新读取（where 中的字段可能已被修改）
        lookup = {"id": where["id"]} if "id" in where else {**where, **update}
        found = await self.find_many(model, where=lookup, limit=1)
        return found[0] if found else None

    async def delete(self, model: str, where: Record) -> int:
        check_model(model)
        check_fields(model, where)
        clause, params = _where_clause(where)
        cursor = await self.db.execute(f"DELETE FROM {model}{clause}", params)
        return cursor.rowcount


class SqliteAdapter:
    """aiosqlite 存储适配器

    普通操作每次打开一个自动提交的连接；事务使用 BEGIN IMMEDIATE，
    在同一个连接上执行 fn 中的全部操作。
    """

    def __init__(self, db_path: str = "./data/conversations.db"):
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connect(self):
        async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    async def init_db(self):
        """初始化数据库（创建表）"""
        # 确保data目录存在
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            for statement in SCHEMA:
                await db.execute(statement)
        logger.info("数据库初始化完成", db_path=str(self.db_path))

    async def create(self, model: str, data: Record) -> Record:
        async with self._connect() as db:
            return await _SqliteOps(db).create(model, data)

    async def find_many(
        self,
        model: str,
        where: Optional[Record] = None,
        sort_by: Optional[SortBy] = None,
        limit: Optional[int] = None,
        join: Optional[Dict[str, bool]] = None,
    ) -> List[Record]:
        async with self._connect() as db:
            return await _SqliteOps(db).find_many(model, where, sort_by, limit, join)

    async def update(self, model: str, where: Record, update: Record) -> Optional[Record]:
        async with self._connect() as db:
            return await _SqliteOps(db).update(model, where, update)

    async def delete(self, model: str, where: Record) -> int:
        async with self._connect() as db:
            return await _SqliteOps(db).delete(model, where)

    async def transaction(self, fn: Callable[[_SqliteOps], Awaitable[T]]) -> T:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                result = await fn(_SqliteOps(db))
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")
            return result
