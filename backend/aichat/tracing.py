"""LangFuse 追踪配置（v3.x）"""
import os
from typing import Any, Dict, Optional

from langfuse.langchain import CallbackHandler

from .utils.structured_logger import get_logger

logger = get_logger(__name__)

# 全局标记：LangFuse 是否可用
_langfuse_enabled: bool = False


def init_langfuse() -> bool:
    """
    检查 LangFuse 配置（CallbackHandler 会自动从环境变量读取）

    Returns:
        bool: 如果配置完整返回 True
    """
    global _langfuse_enabled

    public_key = os.getenv("LANGFUSE_PUBLIC_KEY")
    secret_key = os.getenv("LANGFUSE_SECRET_KEY")
    host = os.getenv("LANGFUSE_HOST") or os.getenv("LANGFUSE_BASE_URL", "https://cloud.langfuse.com")

    if not public_key or not secret_key:
        logger.info("LangFuse 配置不完整，未启用追踪")
        _langfuse_enabled = False
        return False

    os.environ["LANGFUSE_HOST"] = host
    _langfuse_enabled = True
    logger.info("LangFuse 已启用追踪", host=host)
    return True


def build_run_config(
    conversation_id: Optional[str] = None,
    user_id: Optional[str] = None,
    tags: Optional[list] = None,
) -> Optional[Dict[str, Any]]:
    """
    为一轮补全构造 LangChain RunnableConfig

    v3.x 中 session_id 和 user_id 通过 metadata 传递

    Returns:
        {"callbacks": [...], "metadata": {...}}，未启用时返回 None
    """
    if not _langfuse_enabled:
        return None

    try:
        handler = CallbackHandler()
    except Exception as e:
        logger.warning("创建 LangFuse handler 失败", error=str(e))
        return None

    metadata: Dict[str, Any] = {}
    if conversation_id:
        metadata["langfuse_session_id"] = conversation_id
    if user_id:
        metadata["langfuse_user_id"] = user_id
    if tags:
        metadata["langfuse_tags"] = tags

    return {"callbacks": [handler], "metadata": metadata}


def is_langfuse_enabled() -> bool:
    return _langfuse_enabled
