"""测试聊天管线"""
import asyncio
import json

import pytest

from aichat.chat.errors import (
    AuthorizationDenied,
    ConversationConflict,
    NotFound,
    PostCompletionError,
    ValidationError,
)
from aichat.chat.hooks import ChatHooks, Deny
from aichat.chat.modes import ChatMode
from aichat.chat.schemas import ChatRequest
from aichat.chat.streaming import TurnState
from aichat.chat.persistence import load_messages
from aichat.db.models import ConversationCreate, ConversationUpdate, utcnow
from conftest import (
    FakeCompletionEngine,
    RecordingHooks,
    assistant_message,
    collect,
    context_for,
    user_from_header,
    user_message,
)


def chat_request(*messages, conversation_id=None, **extra):
    return ChatRequest(messages=list(messages), conversationId=conversation_id, **extra)


def texts(messages):
    return [json.loads(m.content)[0]["text"] if m.content != "[]" else "" for m in messages]


def test_new_conversation(make_pipeline, hooks):
    """第一轮对话：创建对话，依次保存用户消息和助手回复"""
    pipeline = make_pipeline()

    async def scenario():
        turn = await pipeline.submit_turn(chat_request(user_message("Hi")), context_for())
        events = await collect(turn.stream)
        conversation = await pipeline.api.get_conversation_by_id(turn.conversation_id)
        return turn, events, conversation

    turn, events, conversation = asyncio.run(scenario())

    assert turn.conversation_id
    assert turn.stream.state is TurnState.COMPLETED
    assert [e["type"] for e in events] == ["start", "token", "token", "done"]
    assert events[0]["conversationId"] == turn.conversation_id
    assert conversation.title == "Hi"
    assert [m.role for m in conversation.messages] == ["user", "assistant"]
    assert texts(conversation.messages) == ["Hi", "Hello there"]
    assert conversation.updated_at >= conversation.created_at
    assert hooks.calls == [("after_chat", turn.conversation_id, ["user", "assistant"])]


def test_title_is_truncated(make_pipeline):
    pipeline = make_pipeline()
    long_text = "很长的问题" * 20

    async def scenario():
        turn = await pipeline.submit_turn(chat_request(user_message(long_text)), context_for())
        await collect(turn.stream)
        return await pipeline.api.get_conversation_by_id(turn.conversation_id)

    conversation = asyncio.run(scenario())
    assert conversation.title == long_text[:50]


def test_second_turn_and_regenerate(make_pipeline):
    """追加一轮后重新生成：助手回复被替换，消息数量不变"""
    pipeline = make_pipeline()

    async def scenario():
        first = await pipeline.submit_turn(chat_request(user_message("u1")), context_for())
        await collect(first.stream)
        cid = first.conversation_id

        second = await pipeline.submit_turn(
            chat_request(user_message("u1"), assistant_message("Hello there"), user_message("u2"), conversation_id=cid),
            context_for(),
        )
        await collect(second.stream)
        after_second = await load_messages(pipeline.adapter, cid)

        pipeline.engine.tokens = ["换一个回答"]
        again = await pipeline.submit_turn(
            chat_request(user_message("u1"), assistant_message("Hello there"), user_message("u2"), conversation_id=cid),
            context_for(),
        )
        await collect(again.stream)
        after_regenerate = await load_messages(pipeline.adapter, cid)
        return after_second, after_regenerate

    after_second, after_regenerate = asyncio.run(scenario())

    assert texts(after_second) == ["u1", "Hello there", "u2", "Hello there"]
    assert texts(after_regenerate) == ["u1", "Hello there", "u2", "换一个回答"]
    assert [m.id for m in after_regenerate[:3]] == [m.id for m in after_second[:3]]


def test_edit_earlier_message(make_pipeline):
    pipeline = make_pipeline()

    async def scenario():
        first = await pipeline.submit_turn(chat_request(user_message("u1")), context_for())
        await collect(first.stream)
        cid = first.conversation_id
        second = await pipeline.submit_turn(
            chat_request(user_message("u1"), assistant_message("Hello there"), user_message("u2"), conversation_id=cid),
            context_for(),
        )
        await collect(second.stream)

        edited = await pipeline.submit_turn(
            chat_request(user_message("u1 修改后"), conversation_id=cid), context_for()
        )
        await collect(edited.stream)
        return await load_messages(pipeline.adapter, cid)

    messages = asyncio.run(scenario())
    assert texts(messages) == ["u1 修改后", "Hello there"]


def test_client_supplied_conversation_id(make_pipeline):
    pipeline = make_pipeline()

    async def scenario():
        turn = await pipeline.submit_turn(chat_request(user_message("Hi"), conversation_id="my-id"), context_for())
        await collect(turn.stream)
        return turn

    assert asyncio.run(scenario()).conversation_id == "my-id"


def test_model_receives_full_history(make_pipeline, engine):
    pipeline = make_pipeline(settings={"system_prompt": "你是助手"})

    async def scenario():
        turn = await pipeline.submit_turn(
            chat_request(user_message("u1"), assistant_message("a1"), user_message("u2"), pageContext="首页"),
            context_for(),
        )
        await collect(turn.stream)

    asyncio.run(scenario())

    [call] = engine.calls
    assert [m.type for m in call["messages"]] == ["system", "human", "ai", "human"]
    assert call["messages"][0].content == "你是助手\n\nCurrent page context:\n首页"
    assert call["tools"] is None
    assert call["max_steps"] == 1


def test_empty_messages_rejected(make_pipeline, adapter, hooks):
    pipeline = make_pipeline()

    with pytest.raises(ValidationError):
        asyncio.run(pipeline.submit_turn(chat_request(), context_for()))

    assert adapter._tables["conversation"] == []
    assert isinstance(hooks.errors[0], ValidationError)


def test_before_chat_deny(make_pipeline, adapter):
    """before_chat 拒绝时不做任何写入"""

    class DenyHooks(RecordingHooks):
        async def before_chat(self, messages, context):
            self.calls.append(("before_chat", messages))
            return Deny("blocked")

    hooks = DenyHooks()
    pipeline = make_pipeline(hooks=hooks)

    with pytest.raises(AuthorizationDenied):
        asyncio.run(pipeline.submit_turn(chat_request(user_message("Hi")), context_for()))

    assert hooks.calls == [("before_chat", [{"role": "user", "content": "Hi"}])]
    assert adapter._tables["conversation"] == []
    assert adapter._tables["message"] == []
    assert isinstance(hooks.errors[0], AuthorizationDenied)


def test_before_hook_returning_false_denies(make_pipeline):
    class FalseHooks(ChatHooks):
        async def before_list_conversations(self, context):
            return False

    pipeline = make_pipeline(hooks=FalseHooks())

    with pytest.raises(AuthorizationDenied):
        asyncio.run(pipeline.list_conversations(context_for()))


def test_ownership_isolation(make_pipeline):
    """用户只能访问自己的对话"""
    pipeline = make_pipeline(settings={"get_user_id": user_from_header})

    async def scenario():
        turn = await pipeline.submit_turn(chat_request(user_message("alice 的问题")), context_for("alice"))
        await collect(turn.stream)
        cid = turn.conversation_id

        with pytest.raises(AuthorizationDenied):
            await pipeline.submit_turn(chat_request(user_message("偷看"), conversation_id=cid), context_for("bob"))
        with pytest.raises(AuthorizationDenied):
            await pipeline.get_conversation(cid, context_for("bob"))
        with pytest.raises(AuthorizationDenied):
            await pipeline.update_conversation(cid, ConversationUpdate(title="改名"), context_for("bob"))
        with pytest.raises(AuthorizationDenied):
            await pipeline.delete_conversation(cid, context_for("bob"))

        alice_list = await pipeline.list_conversations(context_for("alice"))
        bob_list = await pipeline.list_conversations(context_for("bob"))
        messages = await load_messages(pipeline.adapter, cid)
        return cid, alice_list, bob_list, messages

    cid, alice_list, bob_list, messages = asyncio.run(scenario())

    assert [c.id for c in alice_list] == [cid]
    assert alice_list[0].user_id == "alice"
    assert bob_list == []
    assert [m.role for m in messages] == ["user", "assistant"]


def test_missing_identity_rejected(make_pipeline):
    pipeline = make_pipeline(settings={"get_user_id": user_from_header})

    with pytest.raises(AuthorizationDenied):
        asyncio.run(pipeline.submit_turn(chat_request(user_message("Hi")), context_for()))


def test_stateless_mode_never_touches_storage(make_pipeline, adapter):
    """无状态模式：不读写存储，不解析用户身份"""

    def resolver(context):
        raise AssertionError("无状态模式不应解析用户身份")

    pipeline = make_pipeline(settings={"mode": ChatMode.STATELESS, "get_user_id": resolver})

    async def scenario():
        turn = await pipeline.submit_turn(
            chat_request(user_message("Hi"), conversation_id="ignored"), context_for()
        )
        events = await collect(turn.stream)
        listed = await pipeline.list_conversations(context_for())
        with pytest.raises(NotFound):
            await pipeline.get_conversation("ignored", context_for())
        with pytest.raises(NotFound):
            await pipeline.create_conversation(ConversationCreate(), context_for())
        return turn, events, listed

    turn, events, listed = asyncio.run(scenario())

    assert turn.conversation_id is None
    assert [e["type"] for e in events] == ["start", "token", "token", "done"]
    assert listed == []
    assert adapter._tables == {"conversation": [], "message": []}


def test_generation_failure_persists_nothing(make_pipeline, hooks):
    """生成失败：以 error 事件结束，不保存助手回复"""
    pipeline = make_pipeline(engine=FakeCompletionEngine(tokens=["部分"], error=RuntimeError("model down")))

    async def scenario():
        turn = await pipeline.submit_turn(chat_request(user_message("Hi")), context_for())
        events = await collect(turn.stream)
        return turn, events, await load_messages(pipeline.adapter, turn.conversation_id)

    turn, events, messages = asyncio.run(scenario())

    assert turn.stream.state is TurnState.ABORTED
    assert [e["type"] for e in events] == ["start", "token", "error"]
    assert [m.role for m in messages] == ["user"]
    assert isinstance(hooks.errors[0], RuntimeError)
    assert hooks.calls == []


def test_after_chat_failure_is_swallowed(make_pipeline):
    """after_chat 抛出异常不影响已保存的回复，错误交给 on_chat_error"""

    class BrokenAfterChat(RecordingHooks):
        async def after_chat(self, conversation_id, messages, context):
            raise RuntimeError("webhook down")

    hooks = BrokenAfterChat()
    pipeline = make_pipeline(hooks=hooks)

    async def scenario():
        turn = await pipeline.submit_turn(chat_request(user_message("Hi")), context_for())
        events = await collect(turn.stream)
        return events, await load_messages(pipeline.adapter, turn.conversation_id)

    events, messages = asyncio.run(scenario())

    assert events[-1]["type"] == "done"
    assert [m.role for m in messages] == ["user", "assistant"]
    assert isinstance(hooks.errors[0], PostCompletionError)


def test_error_hook_failure_does_not_mask_error(make_pipeline):
    class BrokenErrorHook(ChatHooks):
        async def before_chat(self, messages, context):
            return Deny()

        async def on_chat_error(self, error, context):
            raise RuntimeError("error hook down")

    pipeline = make_pipeline(hooks=BrokenErrorHook())

    with pytest.raises(AuthorizationDenied):
        asyncio.run(pipeline.submit_turn(chat_request(user_message("Hi")), context_for()))


def test_conversation_crud(make_pipeline):
    pipeline = make_pipeline()

    async def scenario():
        created = await pipeline.create_conversation(ConversationCreate(title="草稿"), context_for())
        default = await pipeline.create_conversation(ConversationCreate(id="fixed-id"), context_for())
        updated = await pipeline.update_conversation(created.id, ConversationUpdate(title="新标题"), context_for())
        listed = await pipeline.list_conversations(context_for())
        await pipeline.delete_conversation(created.id, context_for())
        with pytest.raises(NotFound):
            await pipeline.get_conversation(created.id, context_for())
        with pytest.raises(NotFound):
            await pipeline.delete_conversation("missing", context_for())
        return created, default, updated, listed

    created, default, updated, listed = asyncio.run(scenario())

    assert created.title == "草稿"
    assert default.id == "fixed-id"
    assert default.title == "新对话"
    assert updated.title == "新标题"
    # 最近修改的排在前面
    assert [c.id for c in listed] == [created.id, "fixed-id"]


def test_delete_cascades_messages(make_pipeline, adapter):
    pipeline = make_pipeline()

    async def scenario():
        turn = await pipeline.submit_turn(chat_request(user_message("Hi")), context_for())
        await collect(turn.stream)
        await pipeline.delete_conversation(turn.conversation_id, context_for())

    asyncio.run(scenario())

    assert adapter._tables == {"conversation": [], "message": []}


def test_lifecycle_hooks_receive_results(make_pipeline):
    class LifecycleHooks(RecordingHooks):
        async def conversation_created(self, conversation, context):
            self.calls.append(("created", conversation.title))

        async def conversations_read(self, conversations, context):
            self.calls.append(("listed", len(conversations)))

        async def conversation_deleted(self, conversation_id, context):
            self.calls.append(("deleted", conversation_id))

    hooks = LifecycleHooks()
    pipeline = make_pipeline(hooks=hooks)

    async def scenario():
        created = await pipeline.create_conversation(ConversationCreate(id="c1", title="草稿"), context_for())
        await pipeline.list_conversations(context_for())
        await pipeline.delete_conversation(created.id, context_for())

    asyncio.run(scenario())

    assert hooks.calls == [("created", "草稿"), ("listed", 1), ("deleted", "c1")]


def test_regenerate_with_system_message(make_pipeline):
    """客户端列表以 system 消息开头时，重新生成只保留一条助手回复"""
    pipeline = make_pipeline()
    system = {"role": "system", "content": "你是助手"}

    async def scenario():
        first = await pipeline.submit_turn(chat_request(system, user_message("u1")), context_for())
        await collect(first.stream)
        cid = first.conversation_id

        pipeline.engine.tokens = ["新回答"]
        again = await pipeline.submit_turn(chat_request(system, user_message("u1"), conversation_id=cid), context_for())
        await collect(again.stream)
        return await load_messages(pipeline.adapter, cid)

    messages = asyncio.run(scenario())

    assert [m.role for m in messages] == ["user", "assistant"]
    assert texts(messages) == ["u1", "新回答"]


def test_only_system_message_rejected(make_pipeline, adapter):
    pipeline = make_pipeline()

    with pytest.raises(ValidationError):
        asyncio.run(pipeline.submit_turn(chat_request({"role": "system", "content": "你是助手"}), context_for()))

    assert adapter._tables["conversation"] == []


def test_duplicate_conversation_id(make_pipeline):
    """客户端指定的对话ID已存在：属于别人返回 403，否则返回 409"""
    pipeline = make_pipeline(settings={"get_user_id": user_from_header})

    async def scenario():
        await pipeline.create_conversation(ConversationCreate(id="c1"), context_for("alice"))
        with pytest.raises(AuthorizationDenied):
            await pipeline.create_conversation(ConversationCreate(id="c1"), context_for("bob"))
        with pytest.raises(ConversationConflict):
            await pipeline.create_conversation(ConversationCreate(id="c1"), context_for("alice"))
        return await pipeline.list_conversations(context_for("alice"))

    conversations = asyncio.run(scenario())
    assert [c.id for c in conversations] == ["c1"]


def test_turn_reuses_conversation_created_concurrently(make_pipeline, adapter):
    """两个请求同时以同一个ID创建对话时，后到的请求使用已创建的对话"""
    pipeline = make_pipeline()
    original_find_many = adapter.find_many
    hidden = {"c1"}

    async def find_many(model, where=None, **kwargs):
        # 第一次查询时对话还不存在，随后被并发请求创建
        if model == "conversation" and where == {"id": "c1"} and hidden:
            hidden.clear()
            await adapter.create("conversation", {
                "id": "c1", "title": "并发创建", "created_at": utcnow(), "updated_at": utcnow(), "version": 0,
            })
            return []
        return await original_find_many(model, where=where, **kwargs)

    adapter.find_many = find_many

    async def scenario():
        turn = await pipeline.submit_turn(chat_request(user_message("Hi"), conversation_id="c1"), context_for())
        await collect(turn.stream)
        return turn, await pipeline.api.get_conversation_by_id("c1")

    turn, conversation = asyncio.run(scenario())

    assert turn.conversation_id == "c1"
    assert conversation.title == "并发创建"
    assert [m.role for m in conversation.messages] == ["user", "assistant"]
