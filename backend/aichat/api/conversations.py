"""对话管理 API"""
from typing import List

from fastapi import APIRouter, Depends, Request

from ..chat.pipeline import ChatPipeline
from ..db.models import Conversation, ConversationCreate, ConversationUpdate, ConversationWithMessages
from .deps import build_context, get_pipeline

router = APIRouter()


@router.post("/chat/conversations", response_model=Conversation)
async def api_create_conversation(
    conv: ConversationCreate, request: Request, pipeline: ChatPipeline = Depends(get_pipeline)
):
    """创建新对话（id 和 title 都可以省略）"""
    context = build_context(request, body=conv.model_dump(exclude_none=True))
    return await pipeline.create_conversation(conv, context)


@router.get("/chat/conversations", response_model=List[Conversation])
async def api_list_conversations(request: Request, pipeline: ChatPipeline = Depends(get_pipeline)):
    """获取当前用户的所有对话，按 updated_at 倒序；无状态模式下返回空列表"""
    return await pipeline.list_conversations(build_context(request))


@router.get("/chat/conversations/{conversation_id}", response_model=ConversationWithMessages)
async def api_get_conversation(
    conversation_id: str, request: Request, pipeline: ChatPipeline = Depends(get_pipeline)
):
    """获取单个对话及其消息（按时间升序）"""
    context = build_context(request, params={"id": conversation_id})
    return await pipeline.get_conversation(conversation_id, context)


@router.put("/chat/conversations/{conversation_id}", response_model=Conversation)
async def api_update_conversation(
    conversation_id: str,
    update: ConversationUpdate,
    request: Request,
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """修改对话标题"""
    context = build_context(request, body=update.model_dump(exclude_none=True), params={"id": conversation_id})
    return await pipeline.update_conversation(conversation_id, update, context)


@router.delete("/chat/conversations/{conversation_id}")
async def api_delete_conversation(
    conversation_id: str, request: Request, pipeline: ChatPipeline = Depends(get_pipeline)
):
    """删除对话（消息一并删除）"""
    context = build_context(request, params={"id": conversation_id})
    await pipeline.delete_conversation(conversation_id, context)
    return {"success": True}
