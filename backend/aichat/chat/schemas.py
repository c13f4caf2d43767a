"""请求模型"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .messages import UIMessage

PAGE_CONTEXT_MAX_LENGTH = 16000


class ChatRequest(BaseModel):
    """聊天请求（字段名与前端保持 camelCase）"""
    model_config = ConfigDict(populate_by_name=True)

    messages: List[UIMessage] = Field(..., description="客户端完整的消息列表")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId", description="对话ID")
    page_context: Optional[str] = Field(
        default=None,
        alias="pageContext",
        max_length=PAGE_CONTEXT_MAX_LENGTH,
        description="当前页面的上下文描述，注入到系统提示词",
    )
    available_tools: Optional[List[str]] = Field(
        default=None,
        alias="availableTools",
        description="当前页面可以在客户端执行的工具名",
    )
