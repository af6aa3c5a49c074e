from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Protocol, Set
from uuid import uuid4

from .exceptions import LifecycleError
from .models import DEFAULT_CATEGORIES, HealthCategory


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    STREAMING = "streaming"
    FAILED = "failed"
    RETRYING = "retrying"


# 合法的状态迁移；FAILED -> RETRYING 另外要求 role == user
_TRANSITIONS: Dict[MessageStatus, Set[MessageStatus]] = {
    MessageStatus.PENDING: {MessageStatus.SENDING, MessageStatus.STREAMING, MessageStatus.SENT, MessageStatus.FAILED},
    MessageStatus.SENDING: {MessageStatus.STREAMING, MessageStatus.SENT, MessageStatus.FAILED},
    MessageStatus.STREAMING: {MessageStatus.SENT, MessageStatus.FAILED},
    MessageStatus.SENT: set(),
    MessageStatus.FAILED: {MessageStatus.RETRYING},
    MessageStatus.RETRYING: {MessageStatus.SENDING, MessageStatus.SENT, MessageStatus.FAILED},
}


@dataclass
class Message:
    id: str
    role: MessageRole
    content: str
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    error_text: Optional[str] = None
    token_count: Optional[int] = None
    processing_time: Optional[float] = None
    is_error: bool = False

    @classmethod
    def create(cls, role: MessageRole, content: str, status: MessageStatus = MessageStatus.PENDING) -> "Message":
        return cls(id=f"m-{uuid4().hex}", role=role, content=content, status=status)

    @property
    def can_retry(self) -> bool:
        return self.role == MessageRole.USER and self.status == MessageStatus.FAILED

    def transition(self, status: MessageStatus) -> None:
        """按状态表迁移；同状态迁移视为无操作。"""
        if status == self.status:
            return
        if status == MessageStatus.RETRYING and self.role != MessageRole.USER:
            raise LifecycleError(
                f"Only user messages may be retried (message {self.id} is {self.role.value})",
                message_id=self.id,
            )
        if status not in _TRANSITIONS[self.status]:
            raise LifecycleError(
                f"Cannot move message {self.id} from {self.status.value} to {status.value}",
                message_id=self.id,
            )
        self.status = status

    def mark_failed(self, error_text: str) -> None:
        self.transition(MessageStatus.FAILED)
        self.error_text = error_text or "Unknown error"


@dataclass
class Conversation:
    id: str
    title: str
    messages: List[Message] = field(default_factory=list)
    categories: Set[HealthCategory] = field(default_factory=lambda: set(DEFAULT_CATEGORIES))
    archived: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def create(cls, title: str = "New Conversation", categories=None) -> "Conversation":
        cats = set(categories) if categories is not None else set(DEFAULT_CATEGORIES)
        return cls(id=f"c-{uuid4().hex}", title=title, categories=cats)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        self.updated_at = _utcnow()

    def find_message(self, message_id: str) -> Optional[Message]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def replace_message(self, message: Message) -> None:
        """原位替换同 id 的消息，保持顺序。"""
        for i, m in enumerate(self.messages):
            if m.id == message.id:
                self.messages[i] = message
                self.updated_at = _utcnow()
                return
        raise KeyError(message.id)

    def remove_message(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]
        self.updated_at = _utcnow()

    @property
    def user_message_count(self) -> int:
        return sum(1 for m in self.messages if m.role == MessageRole.USER)

    @property
    def assistant_message_count(self) -> int:
        return sum(1 for m in self.messages if m.role == MessageRole.ASSISTANT)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def archive(self) -> None:
        self.archived = True
        self.updated_at = _utcnow()

    def update_title(self, title: str) -> None:
        self.title = title
        self.updated_at = _utcnow()


@dataclass
class ChatStatistics:
    total_conversations: int = 0
    total_messages: int = 0
    total_tokens_used: int = 0
    average_response_time: float = 0.0
    most_used_categories: List[HealthCategory] = field(default_factory=list)
    last_chat_date: Optional[datetime] = None


class ConversationStore(Protocol):
    async def fetch_conversations(self) -> List[Conversation]:
        ...

    async def save_conversation(self, conversation: Conversation) -> None:
        ...

    async def update_conversation(self, conversation: Conversation) -> None:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    async def add_message(self, conversation_id: str, message: Message) -> None:
        """写入一条消息；同 id 重复写入时以最后一次为准。"""
        ...

    async def clear_messages(self, conversation_id: str) -> None:
        ...

    async def search(self, query: str) -> List[Conversation]:
        ...

    async def statistics(self) -> ChatStatistics:
        ...
