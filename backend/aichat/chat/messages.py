"""消息规范化

客户端提交的消息（UIMessage）由 role + 有序的 parts 组成。本模块负责：
1. 提取纯文本（用于 Hook 和对话标题）
2. 序列化为存储格式（只保留 text / file 两类 part，作为对账时的比较键）
3. 转换为 LangChain 消息，交给模型
"""
import json
from typing import Any, Dict, Iterable, List, Literal, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from pydantic import BaseModel, ConfigDict, Field, model_validator

PERSISTED_PART_TYPES = ("text", "file")


class UIMessage(BaseModel):
    """客户端消息（兼容 content 字符串和 parts 数组两种格式）"""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, description="客户端消息ID")
    role: Literal["system", "user", "assistant", "data"] = Field(..., description="角色")
    parts: List[Dict[str, Any]] = Field(default_factory=list, description="有序的消息 parts")
    metadata: Optional[Any] = Field(default=None, description="客户端元数据")

    @model_validator(mode="before")
    @classmethod
    def _content_to_parts(cls, data: Any) -> Any:
        if isinstance(data, dict) and "parts" not in data and isinstance(data.get("content"), str):
            text = data["content"]
            data = {k: v for k, v in data.items() if k != "content"}
            data["parts"] = [{"type": "text", "text": text}]
        return data


def _parts(message: Any) -> List[Dict[str, Any]]:
    parts = message.get("parts") if isinstance(message, dict) else getattr(message, "parts", None)
    return parts if isinstance(parts, list) else []


def extract_text(message: Any) -> str:
    """按顺序拼接所有 text 类型 part 的文本"""
    return "".join(
        part.get("text") or ""
        for part in _parts(message)
        if isinstance(part, dict) and part.get("type") == "text"
    )


def serialize_parts(message: Any) -> str:
    """序列化为存储格式：只保留 text / file part，保持原有顺序"""
    parts = [
        part for part in _parts(message)
        if isinstance(part, dict) and part.get("type") in PERSISTED_PART_TYPES
    ]
    return json.dumps(parts, ensure_ascii=False, separators=(",", ":"))


def parse_content(content: Optional[str]) -> List[Dict[str, Any]]:
    """反序列化存储的消息内容；早期以纯文本保存的内容按单个 text part 处理"""
    if not content:
        return []
    try:
        parts = json.loads(content)
    except json.JSONDecodeError:
        return [{"type": "text", "text": content}]
    if not isinstance(parts, list):
        return [{"type": "text", "text": content}]
    return parts


def _file_part(part: Dict[str, Any]) -> Dict[str, Any]:
    media_type = part.get("mediaType") or part.get("mimeType") or ""
    url = part.get("url") or ""
    if media_type.startswith("image/"):
        return {"type": "image_url", "image_url": {"url": url}}
    name = part.get("filename") or url
    return {"type": "text", "text": f"[附件: {name} ({media_type or 'unknown'})]"}


def _user_content(parts: Iterable[Dict[str, Any]]):
    content = []
    for part in parts:
        if part.get("type") == "text":
            content.append({"type": "text", "text": part.get("text") or ""})
        elif part.get("type") == "file":
            content.append(_file_part(part))

    # 纯文本消息直接用字符串
    if all(item["type"] == "text" for item in content):
        return "".join(item["text"] for item in content)
    return content


def _tool_name(part: Dict[str, Any]) -> Optional[str]:
    part_type = part.get("type") or ""
    if part_type == "dynamic-tool":
        return part.get("toolName")
    if part_type.startswith("tool-"):
        return part_type[len("tool-"):]
    return None


def _assistant_messages(parts: List[Dict[str, Any]]) -> List[BaseMessage]:
    """按 step-start 把 assistant 消息拆成多步：每步一条 AIMessage + 对应的 ToolMessage"""
    steps: List[List[Dict[str, Any]]] = [[]]
    for part in parts:
        if part.get("type") == "step-start":
            if steps[-1]:
                steps.append([])
            continue
        steps[-1].append(part)

    result: List[BaseMessage] = []
    for step in steps:
        text = "".join(p.get("text") or "" for p in step if p.get("type") == "text")
        tool_calls = []
        tool_messages = []
        for part in step:
            name = _tool_name(part)
            if name is None:
                continue
            state = part.get("state")
            call_id = part.get("toolCallId") or ""
            if state == "output-available":
                output = part.get("output")
            elif state == "output-error":
                output = {"error": part.get("errorText") or "tool error"}
            else:
                # 还没有结果的调用无法回放给模型
                continue
            tool_calls.append({"name": name, "args": part.get("input") or {}, "id": call_id})
            tool_messages.append(ToolMessage(
                content=output if isinstance(output, str) else json.dumps(output, ensure_ascii=False),
                tool_call_id=call_id,
            ))
        if not text and not tool_calls:
            continue
        result.append(AIMessage(content=text, tool_calls=tool_calls))
        result.extend(tool_messages)
    return result


def to_langchain_messages(messages: List[UIMessage]) -> List[BaseMessage]:
    """转换为 LangChain 消息（data 消息不发送给模型）"""
    converted: List[BaseMessage] = []
    for msg in messages:
        parts = _parts(msg)
        if msg.role == "system":
            converted.append(SystemMessage(content=extract_text(msg)))
        elif msg.role == "user":
            converted.append(HumanMessage(content=_user_content(parts)))
        elif msg.role == "assistant":
            converted.extend(_assistant_messages(parts))
    return converted
