import pytest

from chat_core.domain.conversation import Conversation, Message, MessageRole, MessageStatus
from chat_core.domain.exceptions import LifecycleError
from chat_core.domain.models import DEFAULT_CATEGORIES, HealthCategory


def test_user_message_lifecycle():
    m = Message.create(MessageRole.USER, "hi", status=MessageStatus.SENDING)
    m.mark_failed("timed out")
    assert m.status == MessageStatus.FAILED
    assert m.error_text == "timed out"
    assert m.can_retry
    m.transition(MessageStatus.RETRYING)
    m.transition(MessageStatus.SENT)
    assert not m.can_retry


def test_sent_is_terminal():
    m = Message.create(MessageRole.USER, "hi", status=MessageStatus.SENT)
    with pytest.raises(LifecycleError) as exc:
        m.transition(MessageStatus.SENDING)
    assert exc.value.code == "INVALID_TRANSITION"
    # 同状态迁移不报错
    m.transition(MessageStatus.SENT)


def test_failed_cannot_skip_retrying():
    m = Message.create(MessageRole.USER, "hi", status=MessageStatus.FAILED)
    with pytest.raises(LifecycleError):
        m.transition(MessageStatus.SENT)


def test_assistant_messages_cannot_be_retried():
    m = Message.create(MessageRole.ASSISTANT, "", status=MessageStatus.STREAMING)
    m.mark_failed("stream dropped")
    assert not m.can_retry
    with pytest.raises(LifecycleError):
        m.transition(MessageStatus.RETRYING)


def test_mark_failed_without_text_uses_placeholder():
    m = Message.create(MessageRole.USER, "hi", status=MessageStatus.SENDING)
    m.mark_failed("")
    assert m.error_text == "Unknown error"


def test_conversation_message_operations():
    conv = Conversation.create()
    assert conv.title == "New Conversation"
    assert conv.categories == set(DEFAULT_CATEGORIES)

    user = Message.create(MessageRole.USER, "hi", status=MessageStatus.SENT)
    reply = Message.create(MessageRole.ASSISTANT, "", status=MessageStatus.STREAMING)
    conv.add_message(user)
    conv.add_message(reply)
    assert conv.user_message_count == 1
    assert conv.assistant_message_count == 1

    final = Message(id=reply.id, role=MessageRole.ASSISTANT, content="hello", status=MessageStatus.SENT)
    conv.replace_message(final)
    assert conv.messages[1].content == "hello"
    assert conv.last_message is final

    conv.remove_message(reply.id)
    assert conv.find_message(reply.id) is None
    with pytest.raises(KeyError):
        conv.replace_message(final)


def test_category_parsing():
    assert HealthCategory.parse("blood_test") is HealthCategory.BLOOD_TEST
    assert HealthCategory.parse(HealthCategory.IMAGING_REPORT) is HealthCategory.IMAGING_REPORT
    with pytest.raises(ValueError):
        HealthCategory.parse("dental")
