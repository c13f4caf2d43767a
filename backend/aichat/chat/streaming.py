"""流式响应

一轮对话的状态：PREPARING → STREAMING → COMPLETED | ABORTED

模型生成在后台 asyncio 任务中进行，token 写入队列，HTTP 响应体从队列中读取。
后台任务与客户端连接解耦：客户端中途断开时，回复仍会完整生成并保存。
持久化模式下，生成结束后（响应已经开始发送）保存助手回复、刷新 updated_at、
调用 after_chat Hook；这一阶段的任何异常只记录日志并交给 on_chat_error。
"""
import asyncio
import json
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Set

from ..db.adapter import StorageAdapter
from ..llm import CompletionEngine, CompletionEvent
from ..utils.structured_logger import get_logger
from .context import ComposedTurn
from .errors import PostCompletionError
from .hooks import ChatApiContext, ChatHooks, notify
from .persistence import load_messages, save_assistant_reply

logger = get_logger(__name__)

_END = object()


class TurnState(str, Enum):
    PREPARING = "preparing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"


def sse_event(payload: Dict[str, Any]) -> str:
    """格式化为 SSE 事件"""
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


def _event_payload(event: CompletionEvent) -> Dict[str, Any]:
    if event.type == "token":
        return {"type": "token", "content": event.content}
    if event.type == "tool_call":
        return {
            "type": "tool_call",
            "tool": event.tool_name,
            "toolCallId": event.tool_call_id,
            "input": event.args or {},
        }
    # tool_result: 限制工具输出长度
    output = event.output if isinstance(event.output, (str, int, float, bool, type(None))) else str(event.output)
    if isinstance(output, str):
        output = output[:2000]
    return {"type": "tool_result", "tool": event.tool_name, "toolCallId": event.tool_call_id, "output": output}


class TurnStream:
    """一轮对话的输出流"""

    def __init__(
        self,
        composer: "StreamingResponseComposer",
        turn: ComposedTurn,
        context: ChatApiContext,
        conversation_id: Optional[str] = None,
        run_config: Optional[Dict[str, Any]] = None,
    ):
        self.composer = composer
        self.turn = turn
        self.context = context
        self.conversation_id = conversation_id
        self.run_config = run_config
        self.state = TurnState.PREPARING
        self.text: Optional[str] = None
        self.task: Optional[asyncio.Task] = None
        self._queue: asyncio.Queue = asyncio.Queue()

    async def _run(self):
        await self._queue.put(sse_event({"type": "start", "conversationId": self.conversation_id}))
        text = ""
        try:
            async for event in self.composer.engine.stream(
                self.turn.messages,
                tools=self.turn.tools,
                max_steps=self.turn.max_steps,
                run_config=self.run_config,
            ):
                if event.type == "finish":
                    text = event.content
                else:
                    await self._queue.put(sse_event(_event_payload(event)))
        except Exception as e:
            # 生成失败：不保存助手回复，响应以 error 事件结束
            self.state = TurnState.ABORTED
            logger.error("模型生成失败", error=str(e), exc_info=True)
            await notify(self.composer.hooks.on_chat_error(e, self.context), "on_chat_error")
            await self._queue.put(sse_event({"type": "error", "message": "生成回复失败"}))
            await self._queue.put(_END)
            return

        self.text = text
        self.state = TurnState.COMPLETED
        if self.conversation_id is not None:
            await self.composer.persist_completion(self.conversation_id, text, self.context)
        await self._queue.put(sse_event({"type": "done"}))
        await self._queue.put(_END)

    async def body(self) -> AsyncIterator[str]:
        """HTTP 响应体"""
        while True:
            item = await self._queue.get()
            if item is _END:
                break
            yield item


class StreamingResponseComposer:
    """驱动模型补全，并在生成结束后持久化助手回复"""

    def __init__(self, adapter: StorageAdapter, engine: CompletionEngine, hooks: ChatHooks):
        self.adapter = adapter
        self.engine = engine
        self.hooks = hooks
        self._tasks: Set[asyncio.Task] = set()

    def start(
        self,
        turn: ComposedTurn,
        context: ChatApiContext,
        conversation_id: Optional[str] = None,
        run_config: Optional[Dict[str, Any]] = None,
    ) -> TurnStream:
        """启动后台生成任务；conversation_id 为 None 时（无状态模式）不做任何持久化"""
        stream = TurnStream(self, turn, context, conversation_id, run_config)
        stream.state = TurnState.STREAMING
        stream.task = asyncio.create_task(stream._run())
        self._tasks.add(stream.task)
        stream.task.add_done_callback(self._tasks.discard)
        return stream

    async def persist_completion(self, conversation_id: str, text: str, context: ChatApiContext):
        """保存助手回复 → 刷新对话 → after_chat；异常不向外传播"""
        try:
            await save_assistant_reply(self.adapter, conversation_id, text)
            messages = await load_messages(self.adapter, conversation_id)
            await self.hooks.after_chat(conversation_id, messages, context)
        except Exception as e:
            logger.error("生成后处理失败", conversation_id=conversation_id, error=str(e), exc_info=True)
            error = PostCompletionError(f"保存助手回复失败: {e}")
            error.__cause__ = e
            await notify(self.hooks.on_chat_error(error, context), "on_chat_error")
            return
        logger.info("助手回复已保存", conversation_id=conversation_id, length=len(text))

    async def drain(self):
        """等待所有后台生成任务结束（应用关闭时调用）"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
