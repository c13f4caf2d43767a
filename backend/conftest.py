"""测试共用的 fixture"""
import json
from typing import Any, Dict, List, Optional

import pytest

from aichat.chat.hooks import ChatApiContext, ChatHooks
from aichat.chat.pipeline import ChatPipeline, ChatPipelineSettings
from aichat.db import MemoryAdapter
from aichat.llm import CompletionEvent


class FakeCompletionEngine:
    """按预设 token 输出的补全引擎，记录每次调用的输入"""

    def __init__(self, tokens=("Hello", " there"), error: Optional[Exception] = None):
        self.tokens = list(tokens)
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def stream(self, messages, tools=None, max_steps=1, run_config=None):
        self.calls.append({"messages": messages, "tools": tools, "max_steps": max_steps})
        for token in self.tokens:
            yield CompletionEvent(type="token", content=token)
        if self.error is not None:
            raise self.error
        yield CompletionEvent(type="finish", content="".join(self.tokens))


class RecordingHooks(ChatHooks):
    """记录被调用的 Hook"""

    def __init__(self):
        self.calls: List[tuple] = []
        self.errors: List[Exception] = []

    async def after_chat(self, conversation_id, messages, context):
        self.calls.append(("after_chat", conversation_id, [m.role for m in messages]))

    async def on_chat_error(self, error, context):
        self.errors.append(error)


def user_message(text: str, message_id: Optional[str] = None) -> Dict[str, Any]:
    return {"id": message_id, "role": "user", "parts": [{"type": "text", "text": text}]}


def assistant_message(text: str, message_id: Optional[str] = None) -> Dict[str, Any]:
    return {"id": message_id, "role": "assistant", "parts": [{"type": "text", "text": text}]}


def parse_sse(body: str) -> List[Dict[str, Any]]:
    """把 SSE 响应体解析为事件列表"""
    return [
        json.loads(block[len("data: "):])
        for block in body.split("\n\n")
        if block.startswith("data: ")
    ]


async def collect(stream) -> List[Dict[str, Any]]:
    """读完一轮输出流，返回事件列表"""
    chunks = [chunk async for chunk in stream.body()]
    return parse_sse("".join(chunks))


def context_for(user_id: Optional[str] = None) -> ChatApiContext:
    return ChatApiContext(headers={"X-User-Id": user_id} if user_id else {})


def user_from_header(context: ChatApiContext) -> Optional[str]:
    return context.headers.get("X-User-Id")


@pytest.fixture
def adapter():
    return MemoryAdapter()


@pytest.fixture
def engine():
    return FakeCompletionEngine()


@pytest.fixture
def hooks():
    return RecordingHooks()


@pytest.fixture
def make_pipeline(adapter, engine, hooks):
    """按需构造管线，默认使用内存存储、假引擎和 RecordingHooks"""

    def _make(**overrides):
        settings = ChatPipelineSettings(**overrides.pop("settings", {}))
        return ChatPipeline(
            overrides.pop("adapter", adapter),
            overrides.pop("engine", engine),
            hooks=overrides.pop("hooks", hooks),
            settings=settings,
        )

    return _make
