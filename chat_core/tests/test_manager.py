import asyncio
import tempfile

import pytest

from chat_core.domain.conversation import MessageRole, MessageStatus
from chat_core.domain.exceptions import (
    EmptyMessageError,
    NetworkError,
    NoActiveConversationError,
    NotConnectedError,
    StoreError,
    ValidationError,
)
from chat_core.domain.models import HealthCategory, ProviderResponse, RecordSummary, RetryPolicy
from chat_core.infrastructure.error_reporter import ErrorReporter
from chat_core.infrastructure.records.memory_source import InMemoryHealthRecordSource
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.pipeline.manager import ChatPipelineConfig, MessageLifecycleManager
from chat_core.pipeline.retry import RetryExecutor
from chat_core.providers.base import StreamChunk, StreamingProvider
from chat_core.providers.registry import ProviderRegistry


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeProvider(StreamingProvider):
    """脚本化的后端：errors 依次在每次调用开始时抛出，耗尽后正常返回。"""

    name = "fake"

    def __init__(self, model="llama3.2:3b", chunks=None, reply="Hello!", tokens=3, errors=None, fail_after_chunks=None, reachable=True):
        super().__init__(model)
        self.reachable = reachable
        self.hang = False
        self.chunks = chunks if chunks is not None else ["He", "llo", "!"]
        self.reply = reply
        self.tokens = tokens
        self.errors = list(errors or [])
        self.fail_after_chunks = fail_after_chunks
        self.calls = []

    async def test_connection(self):
        return self.reachable

    async def send_message(self, content, context):
        self.calls.append({"mode": "blocking", "content": content, "context": context, "system_prompt": None})
        if self.hang:
            await asyncio.Event().wait()
        if self.errors:
            raise self.errors.pop(0)
        return ProviderResponse(content=self.reply, token_count=self.tokens, response_time=0.25, model=self.model)

    async def _stream_chunks(self, content, context, system_prompt):
        self.calls.append({"mode": "streaming", "content": content, "context": context, "system_prompt": system_prompt})
        if self.errors:
            raise self.errors.pop(0)
        for delta in self.chunks:
            yield StreamChunk(delta=delta)
            await asyncio.sleep(0)
        if self.fail_after_chunks is not None:
            raise self.fail_after_chunks
        yield StreamChunk(token_count=self.tokens)


def _timeout():
    return NetworkError(code="TIMEOUT", message="Request timed out")


def _records():
    return InMemoryHealthRecordSource(
        [
            RecordSummary(
                id="p1",
                title="Profile",
                category=HealthCategory.PERSONAL_INFO,
                details={"Blood Type": "O+"},
            )
        ]
    )


class Harness:
    def __init__(self, root, provider, use_streaming=False, store=None):
        self.provider = provider
        self.store = store or JsonConversationStore(root=root)
        self.reporter = ErrorReporter()
        self.sleep = FakeSleep()
        registry = ProviderRegistry()
        registry.register("fake", lambda: provider)
        self.events = []
        self.manager = MessageLifecycleManager(
            store=self.store,
            record_source=_records(),
            providers=registry,
            error_reporter=self.reporter,
            config=ChatPipelineConfig(
                system_prompt="Be kind.",
                use_streaming=use_streaming,
                retry_policy=RetryPolicy(max_attempts=3, jitter=False),
            ),
            retry_executor=RetryExecutor(sleep=self.sleep),
        )
        self.manager.events.subscribe(self.events.append)

    def run(self, coro):
        return asyncio.run(coro)

    def stored(self, conversation_id):
        return self.run(self.store.get_conversation(conversation_id))


def test_send_without_conversation_has_no_side_effects():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider())
        with pytest.raises(NoActiveConversationError):
            h.run(h.manager.send_message("hello"))
        assert h.run(h.store.fetch_conversations()) == []
        assert h.provider.calls == []
        assert h.reporter.current.context == "send_message"


def test_offline_and_empty_messages_are_rejected():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider())
        conv = h.run(h.manager.start_new_conversation())

        with pytest.raises(EmptyMessageError):
            h.run(h.manager.send_message("   "))
        h.manager.set_offline(True)
        with pytest.raises(NotConnectedError):
            h.run(h.manager.send_message("hello"))
        assert not h.run(h.manager.check_connection())

        assert conv.messages == []
        assert h.stored(conv.id).messages == []
        assert h.provider.calls == []


def test_first_turn_injects_instructions_for_listed_model():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(model="medgemma-4b-it"))
        h.run(h.manager.start_new_conversation())
        h.run(h.manager.send_message("What is my blood type?"))

        call = h.provider.calls[0]
        assert call["context"] == ""
        assert call["content"].startswith("INSTRUCTIONS:\nBe kind.\n\nCONTEXT:\n=== Health Context for:")
        assert "- Blood Type: O+" in call["content"]
        assert call["content"].endswith("QUESTION:\nWhat is my blood type?")

        h.run(h.manager.send_message("And my allergies?"))
        second = h.provider.calls[1]
        assert second["content"] == "And my allergies?"
        assert second["context"].startswith("System: Be kind.\n\nContext: === Health Context")


def test_first_turn_injection_on_streaming_path():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(model="google/medgemma-27b-text-it"), use_streaming=True)
        h.run(h.manager.start_new_conversation())
        h.run(h.manager.send_message("Hi"))
        call = h.provider.calls[0]
        assert call["content"].startswith("INSTRUCTIONS:")
        assert call["context"] == ""
        assert call["system_prompt"] is None


def test_other_models_get_system_prompt_and_context():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(), use_streaming=True)
        h.run(h.manager.start_new_conversation())
        h.run(h.manager.send_message("Hi"))
        call = h.provider.calls[0]
        assert call["content"] == "Hi"
        assert call["system_prompt"] == "Be kind."
        assert "Blood Type: O+" in call["context"]


def test_streaming_reply_is_updated_in_place_and_persisted():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(chunks=["He", "llo", "!"], tokens=3), use_streaming=True)
        conv = h.run(h.manager.start_new_conversation())
        reply = h.run(h.manager.send_message("Say hello"))

        assert reply.content == "Hello!"
        assert reply.status == MessageStatus.SENT
        assert reply.token_count == 3
        assert [m.role for m in conv.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert conv.messages[1] is reply

        stored = h.stored(conv.id)
        assert [(m.role, m.status) for m in stored.messages] == [
            (MessageRole.USER, MessageStatus.SENT),
            (MessageRole.ASSISTANT, MessageStatus.SENT),
        ]
        assert stored.messages[1].content == "Hello!"
        assert stored.messages[1].token_count == 3

        kinds = [e.kind for e in h.events]
        assert "send_completed" in kinds
        reply_updates = [e.message.content for e in h.events if e.kind == "message_updated" and e.message is reply]
        assert reply_updates[-1] == "Hello!"


def test_blocking_timeout_marks_user_message_failed():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(errors=[_timeout()]))
        conv = h.run(h.manager.start_new_conversation())
        with pytest.raises(NetworkError):
            h.run(h.manager.send_message("Hello?"))

        user = conv.messages[0]
        assert user.status == MessageStatus.FAILED
        assert user.error_text
        assert user.can_retry
        assert len(conv.messages) == 1
        assert h.stored(conv.id).messages[0].status == MessageStatus.FAILED
        assert h.reporter.current.can_retry
        assert h.reporter.current.context == f"send_message:{conv.id}"
        assert h.events[-1].kind == "send_failed"


def test_reporter_retry_action_resends_message():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(errors=[_timeout()], reply="Back online."))
        conv = h.run(h.manager.start_new_conversation())
        with pytest.raises(NetworkError):
            h.run(h.manager.send_message("Hello?"))

        assert h.run(h.reporter.retry_current()) is True
        user = conv.messages[0]
        assert user.status == MessageStatus.SENT
        assert user.error_text is None
        assert conv.messages[1].content == "Back online."
        assert [m.status for m in h.stored(conv.id).messages] == [MessageStatus.SENT, MessageStatus.SENT]
        assert "message_retrying" in [e.kind for e in h.events]


def test_retry_backs_off_between_attempts():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(errors=[_timeout(), _timeout()]))
        conv = h.run(h.manager.start_new_conversation())
        with pytest.raises(NetworkError):
            h.run(h.manager.send_message("Hello?"))

        outcome = h.run(h.manager.retry_message(conv.messages[0].id))
        assert outcome.kind == "success"
        assert outcome.attempts_made == 2
        assert h.sleep.delays == [2.0]
        # 重试仍视为首轮，重新构建上下文
        assert len(h.provider.calls) == 3
        assert "Blood Type: O+" in h.provider.calls[-1]["context"]


def test_retry_exhaustion_leaves_message_failed():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(errors=[_timeout()] * 4))
        conv = h.run(h.manager.start_new_conversation())
        with pytest.raises(NetworkError):
            h.run(h.manager.send_message("Hello?"))

        outcome = h.run(h.manager.retry_message(conv.messages[0].id))
        assert outcome.kind == "failure"
        assert outcome.attempts_made == 3
        assert conv.messages[0].status == MessageStatus.FAILED
        assert conv.messages[0].can_retry


def test_retry_of_non_failed_message_is_noop():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider())
        conv = h.run(h.manager.start_new_conversation())
        reply = h.run(h.manager.send_message("Hi"))
        assert h.run(h.manager.retry_message(conv.messages[0].id)) is None
        assert h.run(h.manager.retry_message(reply.id)) is None
        assert h.run(h.manager.retry_message("m-unknown")) is None
        assert len(h.provider.calls) == 1


def test_non_retryable_error_has_no_retry_action():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(errors=[ValidationError(code="AUTH_FAILED", message="bad key", http_status=401)]))
        h.run(h.manager.start_new_conversation())
        with pytest.raises(ValidationError):
            h.run(h.manager.send_message("Hi"))
        assert not h.reporter.current.can_retry


def test_streaming_failure_before_first_chunk_removes_placeholder():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(errors=[_timeout()]), use_streaming=True)
        conv = h.run(h.manager.start_new_conversation())
        with pytest.raises(NetworkError):
            h.run(h.manager.send_message("Hi"))
        assert [m.role for m in conv.messages] == [MessageRole.USER]
        assert conv.messages[0].status == MessageStatus.FAILED
        assert len(h.stored(conv.id).messages) == 1


def test_streaming_failure_mid_stream_keeps_partial_reply():
    with tempfile.TemporaryDirectory() as d:
        provider = FakeProvider(chunks=["Your ", "results"], fail_after_chunks=_timeout())
        provider.immediate_updates = True
        h = Harness(d, provider, use_streaming=True)
        conv = h.run(h.manager.start_new_conversation())
        with pytest.raises(NetworkError):
            h.run(h.manager.send_message("Hi"))

        user, partial = conv.messages
        assert user.status == MessageStatus.FAILED
        assert partial.is_error
        assert partial.status == MessageStatus.FAILED
        assert partial.content == "Your results"
        stored = h.stored(conv.id).messages
        assert [m.id for m in stored] == [user.id, partial.id]
        assert stored[1].is_error


def test_user_message_persist_failure_aborts_send():
    class BrokenStore(JsonConversationStore):
        async def add_message(self, conversation_id, message):
            raise StoreError(code="STORE_WRITE_ERROR", message="disk full")

    with tempfile.TemporaryDirectory() as d:
        provider = FakeProvider()
        h = Harness(d, provider, store=BrokenStore(root=d))
        conv = h.run(h.manager.start_new_conversation())
        with pytest.raises(StoreError):
            h.run(h.manager.send_message("Hi"))
        assert conv.messages == []
        assert provider.calls == []


def test_title_generated_from_first_exchange():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider())
        conv = h.run(h.manager.start_new_conversation())
        long_question = "Can you explain what my latest cholesterol and glucose numbers mean for me?"
        h.run(h.manager.send_message(long_question))
        assert conv.title == long_question[:50].rstrip() + "..."
        assert h.stored(conv.id).title == conv.title

        h.run(h.manager.send_message("Thanks"))
        assert conv.title.endswith("...")


def test_explicit_title_is_kept():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider())
        conv = h.run(h.manager.start_new_conversation("Lab review"))
        h.run(h.manager.send_message("Hi"))
        assert conv.title == "Lab review"


def test_conversation_management():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider())
        first = h.run(h.manager.start_new_conversation("Sleep"))
        second = h.run(h.manager.start_new_conversation("Cholesterol"))
        assert h.manager.conversations[0] is second
        h.run(h.manager.send_message("Is my LDL high?"))

        assert [c.id for c in h.manager.search_conversations("ldl")] == [second.id]
        h.manager.select_conversation(first.id)
        assert h.manager.current is first

        h.run(h.manager.select_categories(["blood_test"]))
        assert h.stored(first.id).categories == {HealthCategory.BLOOD_TEST}
        assert {c.id for c in h.manager.filter_by_category(HealthCategory.BLOOD_TEST)} == {first.id, second.id}

        h.run(h.manager.archive_conversation(second.id))
        assert h.stored(second.id).archived
        h.run(h.manager.clear_conversation_messages(second.id))
        assert h.stored(second.id).messages == []

        h.run(h.manager.delete_conversation(first.id))
        assert h.manager.current is None
        loaded = h.run(h.manager.load_conversations())
        assert [c.id for c in loaded] == [second.id]

        stats = h.run(h.manager.get_statistics())
        assert stats.total_conversations == 1


def test_cancelled_retry_leaves_message_retryable():
    with tempfile.TemporaryDirectory() as d:
        provider = FakeProvider(errors=[_timeout()])
        h = Harness(d, provider)
        conv = h.run(h.manager.start_new_conversation())
        with pytest.raises(NetworkError):
            h.run(h.manager.send_message("Hello?"))
        user = conv.messages[0]
        provider.hang = True

        async def cancel_mid_flight():
            task = asyncio.create_task(h.manager.retry_message(user.id))
            while len(provider.calls) < 2:
                await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        h.run(cancel_mid_flight())
        assert user.status == MessageStatus.FAILED
        assert user.can_retry
        assert not h.manager.is_sending
        assert h.stored(conv.id).messages[0].status == MessageStatus.FAILED

        provider.hang = False
        outcome = h.run(h.manager.retry_message(user.id))
        assert outcome.kind == "success"
        assert user.status == MessageStatus.SENT


class FlakyStore(JsonConversationStore):
    """第 N 次 add_message 写入失败，其余正常。"""

    def __init__(self, root, failing_write):
        super().__init__(root=root)
        self.failing_write = failing_write
        self.writes = 0

    async def add_message(self, conversation_id, message):
        self.writes += 1
        if self.writes == self.failing_write:
            raise StoreError(code="STORE_WRITE_ERROR", message="disk full")
        await super().add_message(conversation_id, message)


def _assert_completion_failure_rolls_back(failing_write, use_streaming):
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(), use_streaming=use_streaming, store=FlakyStore(d, failing_write))
        conv = h.run(h.manager.start_new_conversation())
        with pytest.raises(StoreError):
            h.run(h.manager.send_message("Hi"))

        user = conv.messages[0]
        assert [m.role for m in conv.messages] == [MessageRole.USER]
        assert user.status == MessageStatus.FAILED
        assert user.can_retry
        assert [(m.role, m.status) for m in h.stored(conv.id).messages] == [(MessageRole.USER, MessageStatus.FAILED)]
        assert h.events[-1].kind == "send_failed"

        outcome = h.run(h.manager.retry_message(user.id))
        assert outcome.kind == "success"
        assert [m.status for m in conv.messages] == [MessageStatus.SENT, MessageStatus.SENT]
        assert [m.status for m in h.stored(conv.id).messages] == [MessageStatus.SENT, MessageStatus.SENT]


def test_user_status_write_failure_rolls_back_exchange():
    # 写入顺序：1 用户消息 sending，2 用户消息 sent，3 助手回复
    _assert_completion_failure_rolls_back(failing_write=2, use_streaming=False)


def test_reply_write_failure_rolls_back_exchange():
    _assert_completion_failure_rolls_back(failing_write=3, use_streaming=False)


def test_streamed_reply_write_failure_rolls_back_exchange():
    _assert_completion_failure_rolls_back(failing_write=3, use_streaming=True)


def test_retry_pending_resends_failed_messages_everywhere():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(errors=[_timeout(), _timeout()]))
        first = h.run(h.manager.start_new_conversation("Sleep"))
        with pytest.raises(NetworkError):
            h.run(h.manager.send_message("How did I sleep?"))
        second = h.run(h.manager.start_new_conversation("Labs"))
        with pytest.raises(NetworkError):
            h.run(h.manager.send_message("Any lab results?"))

        h.manager.set_offline(True)
        assert h.run(h.manager.retry_pending()) == []
        assert len(h.provider.calls) == 2

        h.manager.set_offline(False)
        outcomes = h.run(h.manager.retry_pending())
        assert [o.kind for o in outcomes] == ["success", "success"]
        for conv in (first, second):
            assert [m.status for m in conv.messages] == [MessageStatus.SENT, MessageStatus.SENT]
        assert h.run(h.manager.retry_pending()) == []


def test_failed_connection_check_does_not_block_sending():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider(reachable=False))
        conv = h.run(h.manager.start_new_conversation())
        assert not h.run(h.manager.check_connection())

        reply = h.run(h.manager.send_message("Hi"))
        assert reply.status == MessageStatus.SENT
        assert len(h.provider.calls) == 1
        assert [m.status for m in h.stored(conv.id).messages] == [MessageStatus.SENT, MessageStatus.SENT]


def test_filter_by_category():
    with tempfile.TemporaryDirectory() as d:
        h = Harness(d, FakeProvider())
        labs = h.run(h.manager.start_new_conversation("Labs"))
        h.run(h.manager.select_categories(["blood_test"]))
        scans = h.run(h.manager.start_new_conversation("Scans"))
        h.run(h.manager.select_categories([HealthCategory.IMAGING_REPORT, HealthCategory.PERSONAL_INFO]))

        assert [c.id for c in h.manager.filter_by_category("blood_test")] == [labs.id]
        assert [c.id for c in h.manager.filter_by_category(HealthCategory.PERSONAL_INFO)] == [scans.id]
        assert h.manager.filter_by_category(HealthCategory.HEALTH_CHECKUP) == []
        with pytest.raises(ValueError):
            h.manager.filter_by_category("dental")
