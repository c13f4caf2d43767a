"""系统提示词与工具集合的组装"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.messages import BaseMessage, SystemMessage

from .messages import UIMessage, to_langchain_messages
from .page_tools import BUILT_IN_PAGE_TOOL_SCHEMAS

# 有工具时允许的最大推理步数（防止工具调用死循环）
MAX_TOOL_STEPS = 5


@dataclass
class ComposedTurn:
    """发送给模型的一轮输入"""
    messages: List[BaseMessage]
    tools: Optional[Dict[str, Any]]
    max_steps: int


def build_system_prompt(base_prompt: Optional[str], page_context: Optional[str]) -> Optional[str]:
    """基础提示词 + 页面上下文；两者都没有时不发送 system 消息"""
    page_block = ""
    if page_context and page_context.strip():
        page_block = f"Current page context:\n{page_context}"

    if base_prompt and page_block:
        return f"{base_prompt}\n\n{page_block}"
    return base_prompt or page_block or None


def select_tools(
    static_tools: Optional[Dict[str, Any]],
    available_tools: Optional[Sequence[str]],
    enable_page_tools: bool = False,
    custom_schemas: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """合并静态工具与本次请求允许的页面工具

    页面工具必须同时满足：已启用页面工具、在注册表中存在、出现在客户端的 availableTools 中。
    """
    active: Dict[str, Any] = {}
    if enable_page_tools and available_tools:
        registry = {**BUILT_IN_PAGE_TOOL_SCHEMAS, **(custom_schemas or {})}
        active = {name: registry[name] for name in available_tools if name in registry}

    merged = {**(static_tools or {}), **active}
    return merged or None


def compose_turn(
    ui_messages: Sequence[UIMessage],
    system_prompt: Optional[str],
    page_context: Optional[str],
    static_tools: Optional[Dict[str, Any]],
    available_tools: Optional[Sequence[str]],
    enable_page_tools: bool = False,
    custom_schemas: Optional[Dict[str, Any]] = None,
) -> ComposedTurn:
    system_content = build_system_prompt(system_prompt, page_context)
    messages = to_langchain_messages(list(ui_messages))
    if system_content:
        messages = [SystemMessage(content=system_content), *messages]

    tools = select_tools(static_tools, available_tools, enable_page_tools, custom_schemas)
    return ComposedTurn(
        messages=messages,
        tools=tools,
        max_steps=MAX_TOOL_STEPS if tools else 1,
    )
