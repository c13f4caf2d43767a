"""数据模型定义"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

DEFAULT_TITLE = "新对话"
TITLE_MAX_LENGTH = 50


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(BaseModel):
    """对话模型"""
    id: str = Field(..., description="对话ID")
    user_id: Optional[str] = Field(default=None, description="所属用户ID（未按用户隔离时为空）")
    title: str = Field(default=DEFAULT_TITLE, description="对话标题")
    created_at: datetime = Field(default_factory=utcnow, description="创建时间")
    updated_at: datetime = Field(default_factory=utcnow, description="更新时间")
    version: int = Field(default=0, description="乐观并发版本号")


class Message(BaseModel):
    """消息模型（content 为序列化后的 parts 列表）"""
    id: str = Field(..., description="消息ID")
    conversation_id: str = Field(..., description="所属对话ID")
    role: Literal["user", "assistant"] = Field(..., description="角色")
    content: str = Field(default="[]", description="JSON 序列化的消息 parts")
    created_at: datetime = Field(default_factory=utcnow, description="创建时间")


class ConversationWithMessages(Conversation):
    """对话详情（包含按时间升序排列的消息）"""
    messages: List[Message] = Field(default_factory=list, description="消息列表")


class ConversationCreate(BaseModel):
    """创建对话请求"""
    id: Optional[str] = Field(default=None, description="对话ID（可选，由客户端指定）")
    title: Optional[str] = Field(default=None, description="对话标题（可选）")


class ConversationUpdate(BaseModel):
    """更新对话请求"""
    title: Optional[str] = Field(default=None, description="对话标题")
