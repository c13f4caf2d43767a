"""路由共用的依赖"""
from typing import Any, Dict, Optional

from fastapi import Request

from ..chat.hooks import ChatApiContext
from ..chat.pipeline import ChatPipeline


def get_pipeline(request: Request) -> ChatPipeline:
    """管线在 lifespan 中创建，保存在 app.state 上"""
    return request.app.state.pipeline


def build_context(request: Request, body: Any = None, params: Optional[Dict[str, Any]] = None) -> ChatApiContext:
    return ChatApiContext(
        body=body,
        params=params or {},
        query=dict(request.query_params),
        headers=request.headers,
        request=request,
    )
