"""Chat API 接口"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ..chat.pipeline import ChatPipeline
from ..chat.schemas import ChatRequest
from .deps import build_context, get_pipeline

router = APIRouter()


@router.post("/chat")
async def chat(body: ChatRequest, request: Request, pipeline: ChatPipeline = Depends(get_pipeline)):
    """
    流式聊天接口（SSE）

    事件格式: data: {"type": "start" | "token" | "tool_call" | "tool_result" | "done" | "error", ...}

    持久化模式下通过响应头 X-Conversation-Id 返回对话ID（新对话由服务端生成）。
    流式输出开始之前的错误（校验、授权、冲突、写入失败）以普通 JSON 错误响应返回。
    """
    context = build_context(request, body=body.model_dump(by_alias=True))
    turn = await pipeline.submit_turn(body, context)

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",  # 禁用 nginx 缓冲
    }
    if turn.conversation_id is not None:
        headers["X-Conversation-Id"] = turn.conversation_id

    return StreamingResponse(turn.stream.body(), media_type="text/event-stream", headers=headers)
