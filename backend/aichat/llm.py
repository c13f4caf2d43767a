"""LLM 初始化与流式补全"""
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langchain_core.tools import BaseTool
from langchain_deepseek import ChatDeepSeek
from langchain_openai import ChatOpenAI

from .config import config
from .utils.structured_logger import get_logger

logger = get_logger(__name__)


@dataclass
class CompletionEvent:
    """补全过程中产生的事件

    type:
        token       - 文本增量
        tool_call   - 模型发起的工具调用
        tool_result - 服务端工具的执行结果
        finish      - 生成结束，content 为完整文本
    """
    type: str
    content: str = ""
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    args: Optional[Dict[str, Any]] = None
    output: Any = None


class CompletionEngine(Protocol):
    """补全引擎协议：最后一个事件必须是 finish"""

    def stream(
        self,
        messages: List[BaseMessage],
        tools: Optional[Dict[str, Any]] = None,
        max_steps: int = 1,
        run_config: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[CompletionEvent]:
        ...


def _chunk_text(chunk: Any) -> str:
    """从流式 chunk 中提取文本（content 可能是字符串或多模态列表）"""
    content = getattr(chunk, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item.get("text", "") if isinstance(item, dict) else str(item)
            for item in content
            if isinstance(item, str) or (isinstance(item, dict) and item.get("type") == "text")
        )
    return ""


class LangChainCompletionEngine:
    """基于 LangChain ChatModel 的补全引擎

    - 有工具时用 bind_tools 绑定，每一步结束后执行服务端工具（BaseTool）并继续下一步
    - 页面工具（只有 schema）交给客户端执行：发出 tool_call 事件后结束本轮
    - 步数不超过 max_steps
    """

    def __init__(self, llm: BaseChatModel):
        self.llm = llm

    async def stream(
        self,
        messages: List[BaseMessage],
        tools: Optional[Dict[str, Any]] = None,
        max_steps: int = 1,
        run_config: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[CompletionEvent]:
        model = self.llm.bind_tools(list(tools.values())) if tools else self.llm
        history = list(messages)
        text_parts: List[str] = []

        for step in range(max(1, max_steps)):
            merged = None
            async for chunk in model.astream(history, config=run_config):
                merged = chunk if merged is None else (merged + chunk)
                token = _chunk_text(chunk)
                if token:
                    text_parts.append(token)
                    yield CompletionEvent(type="token", content=token)

            tool_calls = getattr(merged, "tool_calls", None) or []
            if not tool_calls:
                break

            logger.info("模型发起工具调用", step=step + 1, tools=[call["name"] for call in tool_calls])
            history.append(AIMessage(content=merged.content, tool_calls=tool_calls))

            waiting_for_client = False
            for call in tool_calls:
                yield CompletionEvent(
                    type="tool_call",
                    tool_name=call["name"],
                    tool_call_id=call.get("id"),
                    args=call.get("args") or {},
                )
                tool = (tools or {}).get(call["name"])
                if not isinstance(tool, BaseTool):
                    # 页面工具没有服务端实现
                    waiting_for_client = True
                    continue

                try:
                    output = await tool.ainvoke(call.get("args") or {})
                except Exception as e:
                    logger.warning("工具执行失败", tool=call["name"], error=str(e))
                    output = f"工具执行失败: {e}"
                yield CompletionEvent(
                    type="tool_result",
                    tool_name=call["name"],
                    tool_call_id=call.get("id"),
                    output=output,
                )
                history.append(ToolMessage(content=str(output), tool_call_id=call.get("id") or ""))

            if waiting_for_client:
                break

        yield CompletionEvent(type="finish", content="".join(text_parts))


def get_llm(provider: Optional[str] = None) -> BaseChatModel:
    """
    获取 LLM 实例

    Args:
        provider: deepseek / openai，默认读取 config.LLM_PROVIDER

    Returns:
        启用了流式输出的 ChatModel
    """
    provider = (provider or config.LLM_PROVIDER).lower()

    if provider == "openai":
        logger.info("使用 OpenAI 兼容模型", model=config.OPENAI_MODEL, base_url=config.OPENAI_BASE_URL)
        return ChatOpenAI(
            model=config.OPENAI_MODEL,
            temperature=config.LLM_TEMPERATURE,
            max_tokens=config.LLM_MAX_TOKENS,
            api_key=config.OPENAI_API_KEY,
            base_url=config.OPENAI_BASE_URL,
            streaming=True,
        )

    if provider != "deepseek":
        raise ValueError(f"不支持的 LLM_PROVIDER: {provider}")

    logger.info("使用 DeepSeek 模型", model=config.DEEPSEEK_MODEL)
    return ChatDeepSeek(
        model=config.DEEPSEEK_MODEL,
        temperature=config.LLM_TEMPERATURE,
        max_tokens=config.LLM_MAX_TOKENS,
        api_key=config.DEEPSEEK_API_KEY,
        streaming=True,
    )
