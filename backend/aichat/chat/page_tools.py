"""内置的页面工具 schema

这些工具没有服务端实现：模型发起调用后，由前端页面注册的处理函数执行。
只有当请求的 availableTools 中声明了某个工具名时，才会把它暴露给模型。
部署方可以通过 client_tool_schemas 追加或覆盖这里的定义。
"""
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field


def page_tool(name: str, description: str, args_schema: Type[BaseModel]) -> Dict[str, Any]:
    """构造 OpenAI function 格式的工具定义（可直接传给 bind_tools）"""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": args_schema.model_json_schema(),
        },
    }


class FillBlogFormInput(BaseModel):
    title: Optional[str] = Field(default=None, description="The post title")
    content: Optional[str] = Field(
        default=None,
        description="Full markdown content for the post body. Use proper markdown formatting with headings, lists, etc.",
    )
    excerpt: Optional[str] = Field(default=None, description="A short summary/excerpt of the post (1-2 sentences)")
    tags: Optional[List[str]] = Field(default=None, description="Array of tag names to apply to the post")


class PageLayer(BaseModel):
    id: str = Field(..., description="Unique identifier for this layer")
    type: str = Field(
        ...,
        description="Component type, must match a key in the component registry (e.g. 'div', 'Button', 'Card', 'Flexbox')",
    )
    name: str = Field(..., description="Human-readable display name shown in the layers panel")
    props: Dict[str, Any] = Field(
        ...,
        description="Component props object. Use Tailwind classes for className. See the component registry for valid props per type.",
    )
    children: Optional[Any] = Field(
        default=None,
        description="Child layers (array of ComponentLayer) or plain text string",
    )


class UpdatePageLayersInput(BaseModel):
    layers: List[PageLayer] = Field(
        ...,
        description="Complete replacement layer tree. Must include ALL layers for the page, not just changed ones.",
    )


UPDATE_PAGE_LAYERS_DESCRIPTION = """Replace the UI builder page component layers. Call this when the user asks to change, add, redesign, or update the page layout and components.

Rules:
- Provide the COMPLETE layer tree, not a partial diff. The entire tree will replace the current layers.
- Only use component types that appear in the "Available Component Types" list in the page context.
- Every layer must have a unique `id` string (e.g. "hero-section", "card-title-1").
- The `type` field must exactly match a name from the component registry (e.g. "div", "Button", "Card", "Flexbox").
- The `name` field is the human-readable label shown in the layers panel.
- `props` contains component-specific props (className uses Tailwind classes).
- `children` is either an array of child ComponentLayer objects, or a plain string for text content.
- Use `Flexbox` or `Grid` for layout instead of raw div flex/grid when possible.
- Preserve any layers the user has not asked to change; read the current layers from the page context first.
- ALWAYS use shadcn/ui semantic color tokens in className (e.g. bg-background, bg-card, bg-primary, text-foreground) instead of hardcoded Tailwind colors, so the UI adapts to light and dark themes."""


BUILT_IN_PAGE_TOOL_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "fillBlogForm": page_tool(
        "fillBlogForm",
        "Fill in the blog post editor form fields. Call this when the user asks to write, draft, or populate "
        "a blog post. You can fill any combination of title, content, excerpt, and tags.",
        FillBlogFormInput,
    ),
    "updatePageLayers": page_tool(
        "updatePageLayers",
        UPDATE_PAGE_LAYERS_DESCRIPTION,
        UpdatePageLayersInput,
    ),
}
