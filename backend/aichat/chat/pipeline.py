"""聊天消息管线

ChatPipeline 在应用启动时创建一次（存储适配器、补全引擎、Hook 集合），
之后每个请求通过 app.state.pipeline 复用同一个实例；实例上不保存任何请求级状态。

一轮对话的流程：
    Hook 授权 → 校验 → 模式判断 → 身份解析 → 创建/校验对话 → 对账 → 事务写入
    → 组装提示词与工具 → 后台流式生成 → 保存助手回复
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..db.adapter import Record, StorageAdapter, StorageError
from ..db.models import (
    DEFAULT_TITLE,
    TITLE_MAX_LENGTH,
    Conversation,
    ConversationCreate,
    ConversationUpdate,
    ConversationWithMessages,
    utcnow,
)
from ..llm import CompletionEngine
from ..tracing import build_run_config
from ..utils.structured_logger import LogContext, get_logger
from .context import compose_turn
from .errors import AuthorizationDenied, ConversationConflict, NotFound, ValidationError
from .getters import get_all_conversations, get_conversation_by_id
from .hooks import ChatApiContext, ChatHooks, authorize, notify
from .messages import UIMessage, extract_text
from .modes import ChatMode, UserIdResolver, resolve_user_id
from .persistence import apply_plan, load_conversation, load_messages
from .reconcile import PERSISTED_ROLES, plan_reconciliation
from .schemas import ChatRequest
from .streaming import StreamingResponseComposer, TurnStream

logger = get_logger(__name__)

STATELESS_MESSAGE = "无状态模式下不提供对话接口"


@dataclass
class ChatPipelineSettings:
    """管线配置"""
    mode: ChatMode = ChatMode.PERSISTENT
    system_prompt: Optional[str] = None
    # 服务端工具（LangChain BaseTool），按工具名索引
    tools: Dict[str, Any] = field(default_factory=dict)
    enable_page_tools: bool = False
    # 部署方自定义的页面工具 schema，会覆盖同名的内置 schema
    client_tool_schemas: Dict[str, Any] = field(default_factory=dict)
    get_user_id: Optional[UserIdResolver] = None


@dataclass
class ChatTurn:
    """submit_turn 的返回值：对话ID（无状态模式为 None）和输出流"""
    conversation_id: Optional[str]
    stream: TurnStream


class ServerApi:
    """服务端直接调用的只读接口"""

    def __init__(self, adapter: StorageAdapter):
        self.adapter = adapter

    async def get_all_conversations(self, user_id: Optional[str] = None) -> List[Conversation]:
        return await get_all_conversations(self.adapter, user_id)

    async def get_conversation_by_id(self, conversation_id: str) -> Optional[ConversationWithMessages]:
        return await get_conversation_by_id(self.adapter, conversation_id)


def _derive_title(messages: List[UIMessage]) -> str:
    first_user = next((m for m in messages if m.role == "user"), messages[0])
    return extract_text(first_user)[:TITLE_MAX_LENGTH] or DEFAULT_TITLE


def _check_owner(conversation: Conversation, user_id: Optional[str], message: str):
    if user_id and conversation.user_id and conversation.user_id != user_id:
        raise AuthorizationDenied(message)


class ChatPipeline:
    """聊天管线"""

    def __init__(
        self,
        adapter: StorageAdapter,
        engine: CompletionEngine,
        hooks: Optional[ChatHooks] = None,
        settings: Optional[ChatPipelineSettings] = None,
    ):
        self.adapter = adapter
        self.engine = engine
        self.hooks = hooks or ChatHooks()
        self.settings = settings or ChatPipelineSettings()
        self.composer = StreamingResponseComposer(adapter, engine, self.hooks)
        self.api = ServerApi(adapter)

    @property
    def is_stateless(self) -> bool:
        return self.settings.mode is ChatMode.STATELESS

    async def _user_id(self, context: ChatApiContext) -> Optional[str]:
        return await resolve_user_id(self.settings.mode, self.settings.get_user_id, context)

    # ============== 对话轮次 ==============

    async def submit_turn(self, request: ChatRequest, context: ChatApiContext) -> ChatTurn:
        """处理一轮对话，返回后台生成中的输出流"""
        ui_messages = request.messages
        try:
            hook_messages = [{"role": m.role, "content": extract_text(m)} for m in ui_messages]
            await authorize(self.hooks.before_chat(hook_messages, context), "未授权：无法发起对话")

            if not ui_messages:
                raise ValidationError("至少需要一条消息")

            turn = compose_turn(
                ui_messages,
                system_prompt=self.settings.system_prompt,
                page_context=request.page_context,
                static_tools=self.settings.tools,
                available_tools=request.available_tools,
                enable_page_tools=self.settings.enable_page_tools,
                custom_schemas=self.settings.client_tool_schemas,
            )

            if self.is_stateless:
                logger.info("无状态模式对话", message_count=len(ui_messages))
                stream = self.composer.start(turn, context, run_config=build_run_config())
                return ChatTurn(conversation_id=None, stream=stream)

            if not any(m.role in PERSISTED_ROLES for m in ui_messages):
                raise ValidationError("至少需要一条用户或助手消息")

            user_id = await self._user_id(context)
            conversation = await self._ensure_conversation(
                request.conversation_id, user_id, _derive_title(ui_messages)
            )

            with LogContext(conversation_id=conversation.id, user_id=user_id):
                stored = await load_messages(self.adapter, conversation.id)
                plan = plan_reconciliation(ui_messages, stored)
                await apply_plan(self.adapter, conversation.id, plan, expected_version=conversation.version)
                logger.info(
                    "对话轮次开始",
                    kind=plan.kind.value,
                    deleted=len(plan.to_delete),
                    tools=sorted(turn.tools or {}),
                )
                stream = self.composer.start(
                    turn,
                    context,
                    conversation_id=conversation.id,
                    run_config=build_run_config(conversation.id, user_id),
                )
            return ChatTurn(conversation_id=conversation.id, stream=stream)
        except Exception as e:
            await notify(self.hooks.on_chat_error(e, context), "on_chat_error")
            raise

    async def _ensure_conversation(
        self, conversation_id: Optional[str], user_id: Optional[str], title: str
    ) -> Conversation:
        """没有对话ID时新建；对话ID不存在时按该ID新建；已存在时校验归属"""
        if conversation_id:
            existing = await load_conversation(self.adapter, conversation_id)
            if existing is not None:
                _check_owner(existing, user_id, "未授权：无法访问该对话")
                return existing

        now = utcnow()
        data = {"title": title, "created_at": now, "updated_at": now, "version": 0}
        if conversation_id:
            data["id"] = conversation_id
        if user_id:
            data["user_id"] = user_id
        try:
            return await self._insert_conversation(data, user_id)
        except ConversationConflict:
            # 并发请求已经用同一个ID创建了对话
            existing = await load_conversation(self.adapter, conversation_id)
            if existing is None:
                raise
            _check_owner(existing, user_id, "未授权：无法访问该对话")
            return existing

    async def _insert_conversation(self, data: Record, user_id: Optional[str]) -> Conversation:
        """写入对话；ID 已存在时属于其他用户返回 403，否则返回 409"""
        try:
            record = await self.adapter.create("conversation", data)
        except StorageError as e:
            existing = await load_conversation(self.adapter, data["id"]) if data.get("id") else None
            if existing is None:
                raise
            _check_owner(existing, user_id, "未授权：无法访问该对话")
            raise ConversationConflict("对话已存在") from e
        logger.info("创建对话", conversation_id=record["id"], user_id=user_id)
        return Conversation(**record)

    # ============== 对话管理 ==============

    async def create_conversation(self, data: ConversationCreate, context: ChatApiContext) -> Conversation:
        if self.is_stateless:
            raise NotFound(STATELESS_MESSAGE)
        try:
            user_id = await self._user_id(context)
            await authorize(self.hooks.before_create_conversation(data, context), "未授权：无法创建对话")

            now = utcnow()
            record = {"title": data.title or DEFAULT_TITLE, "created_at": now, "updated_at": now, "version": 0}
            if data.id:
                record["id"] = data.id
            if user_id:
                record["user_id"] = user_id
            conversation = await self._insert_conversation(record, user_id)
        except Exception as e:
            await notify(self.hooks.on_create_conversation_error(e, context), "on_create_conversation_error")
            raise

        await notify(self.hooks.conversation_created(conversation, context), "conversation_created")
        return conversation

    async def list_conversations(self, context: ChatApiContext) -> List[Conversation]:
        if self.is_stateless:
            return []
        try:
            user_id = await self._user_id(context)
            await authorize(self.hooks.before_list_conversations(context), "未授权：无法获取对话列表")
            conversations = await get_all_conversations(self.adapter, user_id)
        except Exception as e:
            await notify(self.hooks.on_list_conversations_error(e, context), "on_list_conversations_error")
            raise

        await notify(self.hooks.conversations_read(conversations, context), "conversations_read")
        return conversations

    async def get_conversation(self, conversation_id: str, context: ChatApiContext) -> ConversationWithMessages:
        if self.is_stateless:
            raise NotFound(STATELESS_MESSAGE)
        try:
            user_id = await self._user_id(context)
            await authorize(
                self.hooks.before_get_conversation(conversation_id, context), "未授权：无法获取该对话"
            )
            conversation = await get_conversation_by_id(self.adapter, conversation_id)
            if conversation is None:
                raise NotFound("对话不存在")
            _check_owner(conversation, user_id, "未授权：无法访问该对话")
        except Exception as e:
            await notify(self.hooks.on_get_conversation_error(e, context), "on_get_conversation_error")
            raise

        await notify(self.hooks.conversation_read(conversation, context), "conversation_read")
        return conversation

    async def update_conversation(
        self, conversation_id: str, data: ConversationUpdate, context: ChatApiContext
    ) -> Conversation:
        if self.is_stateless:
            raise NotFound(STATELESS_MESSAGE)
        try:
            user_id = await self._user_id(context)
            await authorize(
                self.hooks.before_update_conversation(conversation_id, data, context), "未授权：无法修改对话"
            )
            existing = await load_conversation(self.adapter, conversation_id)
            if existing is None:
                raise NotFound("对话不存在")
            _check_owner(existing, user_id, "未授权：无法修改该对话")

            update: Dict[str, Any] = {"updated_at": utcnow()}
            if data.title is not None:
                update["title"] = data.title
            record = await self.adapter.update("conversation", where={"id": conversation_id}, update=update)
            if record is None:
                raise NotFound("对话不存在")
            conversation = Conversation(**record)
        except Exception as e:
            await notify(self.hooks.on_update_conversation_error(e, context), "on_update_conversation_error")
            raise

        await notify(self.hooks.conversation_updated(conversation, context), "conversation_updated")
        return conversation

    async def delete_conversation(self, conversation_id: str, context: ChatApiContext) -> None:
        if self.is_stateless:
            raise NotFound(STATELESS_MESSAGE)
        try:
            user_id = await self._user_id(context)
            await authorize(
                self.hooks.before_delete_conversation(conversation_id, context), "未授权：无法删除对话"
            )
            existing = await load_conversation(self.adapter, conversation_id)
            if existing is None:
                raise NotFound("对话不存在")
            _check_owner(existing, user_id, "未授权：无法删除该对话")

            async def _delete(tx: StorageAdapter):
                await tx.delete("message", where={"conversation_id": conversation_id})
                await tx.delete("conversation", where={"id": conversation_id})

            await self.adapter.transaction(_delete)
            logger.info("删除对话", conversation_id=conversation_id)
        except Exception as e:
            await notify(self.hooks.on_delete_conversation_error(e, context), "on_delete_conversation_error")
            raise

        await notify(self.hooks.conversation_deleted(conversation_id, context), "conversation_deleted")

    async def aclose(self):
        """等待后台生成任务结束"""
        await self.composer.drain()
