"""配置管理"""
import os
from pathlib import Path
from dotenv import load_dotenv

# 显式加载 backend/.env 文件（确保无论从哪个目录启动都能找到）
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """应用配置"""

    # 聊天模式: authenticated（持久化）/ public（无状态）
    CHAT_MODE = os.getenv("CHAT_MODE", "authenticated")
    CHAT_SYSTEM_PROMPT = os.getenv("CHAT_SYSTEM_PROMPT") or None
    CHAT_ENABLE_PAGE_TOOLS = _env_bool("CHAT_ENABLE_PAGE_TOOLS", "true")
    CHAT_API_PREFIX = os.getenv("CHAT_API_PREFIX", "/api")
    # 持久化模式下从该请求头读取用户ID；为空时不按用户隔离对话
    CHAT_USER_HEADER = os.getenv("CHAT_USER_HEADER") or None
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    # 存储: sqlite / memory
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "sqlite")
    DATABASE_PATH = os.getenv("DATABASE_PATH", "./data/conversations.db")

    # LLM 选择: deepseek / openai（OpenAI 兼容接口）
    LLM_PROVIDER = os.getenv("LLM_PROVIDER", "deepseek")

    # DeepSeek LLM
    DEEPSEEK_API_KEY = os.getenv("DEEPSEEK_API_KEY")
    DEEPSEEK_MODEL = os.getenv("DEEPSEEK_MODEL", "deepseek-chat")

    # OpenAI 兼容接口
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
    OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")

    LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "2048"))

    # 日志
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_JSON = _env_bool("LOG_JSON", "false")


config = Config()
