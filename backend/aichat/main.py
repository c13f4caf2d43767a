"""FastAPI 主应用"""
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api import chat, conversations, health
from .chat.errors import ChatError
from .chat.hooks import ChatApiContext
from .chat.modes import ChatMode
from .chat.pipeline import ChatPipeline, ChatPipelineSettings
from .config import config
from .db import MemoryAdapter, SqliteAdapter, StorageAdapter
from .llm import LangChainCompletionEngine, get_llm
from .tracing import init_langfuse
from .utils.structured_logger import LogContext, get_logger, setup_structured_logging

logger = get_logger(__name__)


def header_user_id(context: ChatApiContext) -> Optional[str]:
    """从 CHAT_USER_HEADER 指定的请求头读取用户ID（由前置网关完成认证）"""
    return context.headers.get(config.CHAT_USER_HEADER)


async def create_storage() -> StorageAdapter:
    """按 STORAGE_BACKEND 创建存储适配器"""
    backend = config.STORAGE_BACKEND.lower()
    if backend == "memory":
        logger.info("使用内存存储")
        return MemoryAdapter()
    if backend != "sqlite":
        raise ValueError(f"不支持的 STORAGE_BACKEND: {backend}")

    Path(config.DATABASE_PATH).parent.mkdir(parents=True, exist_ok=True)
    adapter = SqliteAdapter(config.DATABASE_PATH)
    await adapter.init_db()
    logger.info("SQLite 存储已就绪", path=config.DATABASE_PATH)
    return adapter


async def create_pipeline() -> ChatPipeline:
    """根据环境配置创建聊天管线"""
    settings = ChatPipelineSettings(
        mode=ChatMode(config.CHAT_MODE),
        system_prompt=config.CHAT_SYSTEM_PROMPT,
        enable_page_tools=config.CHAT_ENABLE_PAGE_TOOLS,
        get_user_id=header_user_id if config.CHAT_USER_HEADER else None,
    )
    # 无状态模式不会读写存储
    if settings.mode is ChatMode.PERSISTENT:
        adapter = await create_storage()
    else:
        adapter = MemoryAdapter()
    engine = LangChainCompletionEngine(get_llm())
    return ChatPipeline(adapter, engine, settings=settings)


def create_app(pipeline: Optional[ChatPipeline] = None) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        pipeline: 预先构造好的管线；为 None 时在 lifespan 中按环境配置创建
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """管理应用生命周期：启动时创建管线，关闭时等待后台生成任务结束"""
        if pipeline is None:
            setup_structured_logging(
                log_level=config.LOG_LEVEL,
                log_dir=config.LOG_DIR,
                enable_json=config.LOG_JSON,
            )
            init_langfuse()
            app.state.pipeline = await create_pipeline()
        else:
            app.state.pipeline = pipeline
        logger.info("聊天管线已启动", mode=app.state.pipeline.settings.mode.value)

        yield  # 应用运行期间

        await app.state.pipeline.aclose()
        logger.info("聊天管线已关闭")

    app = FastAPI(
        title="AI Chat API",
        description="AI 聊天消息管线 API",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Conversation-Id"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """为每个请求生成 request_id，写入日志上下文"""
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        with LogContext(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        if exc.status_code >= 500:
            logger.error("请求失败", path=request.url.path, error=exc.message)
        else:
            logger.warning("请求被拒绝", path=request.url.path, status=exc.status_code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """请求体格式不合法按 400 返回"""
        logger.warning("请求参数不合法", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    # 注册路由
    prefix = config.CHAT_API_PREFIX.rstrip("/")
    app.include_router(health.router, prefix=prefix, tags=["健康检查"])
    app.include_router(chat.router, prefix=prefix, tags=["聊天"])
    app.include_router(conversations.router, prefix=prefix, tags=["对话管理"])

    @app.get("/")
    async def root():
        """根路径"""
        return {
            "message": "AI Chat API",
            "docs": "/docs",
            "health": f"{prefix}/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
