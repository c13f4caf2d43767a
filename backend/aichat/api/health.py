"""健康检查接口"""
from fastapi import APIRouter, Request
from pydantic import BaseModel

from .. import __version__
from ..tracing import is_langfuse_enabled

router = APIRouter()


class HealthResponse(BaseModel):
    """健康检查响应"""
    status: str
    version: str
    mode: str
    tracing: bool


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """健康检查"""
    return HealthResponse(
        status="ok",
        version=__version__,
        mode=request.app.state.pipeline.settings.mode.value,
        tracing=is_langfuse_enabled(),
    )
