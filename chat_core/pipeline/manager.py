"""消息生命周期管理器。

编排一次发送的完整流程：

    composed -> persisted -> contextBuilt -> dispatched -> {streaming | completed} -> {sent | failed}
                                                   ^                                      |
                                                   +------------ retrying <---------------+

- 用户消息先写入存储再进入工作集；写入失败直接中止，不调用任何后端。
- 上下文构建不会让发送失败（记录源异常时降级为空上下文）。
- 首轮判断在追加占位消息之前完成：恰好一条用户消息且没有助手消息。
- 流式路径先追加空的占位助手消息，增量经 StreamingUpdateCoordinator 应用，
  完成后原位更新同一条消息；阻塞路径在后端返回后才追加助手消息。
- 发送失败时标记“用户消息”为 failed 并持久化，可重试错误会在 ErrorReporter
  中登记重试动作；重试通过 RetryExecutor 重新进入 dispatched，
  复用原内容并重新构建上下文。

所有协作者通过构造函数注入，不依赖任何全局单例。
工作集只应在同一个事件循环中修改；同一会话同一时间最多一个进行中的发送，由调用方保证。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple
from uuid import uuid4

from chat_core.domain.conversation import (
    ChatStatistics,
    Conversation,
    ConversationStore,
    Message,
    MessageRole,
    MessageStatus,
)
from chat_core.domain.exceptions import (
    BusinessError,
    EmptyMessageError,
    NoActiveConversationError,
    NotConnectedError,
    PreconditionError,
    StoreError,
)
from chat_core.domain.models import DEFAULT_CATEGORIES, HealthCategory, ProviderResponse, RetryOutcome, RetryPolicy
from chat_core.domain.records import HealthRecordSource
from chat_core.infrastructure.error_reporter import ErrorReporter, error_message
from chat_core.infrastructure.logging.logger import logger
from chat_core.pipeline.context_builder import ContextBuilder
from chat_core.pipeline.events import EventBus, LifecycleEvent
from chat_core.pipeline.instruction_injection import InstructionFormatter, ShapedRequest, is_first_turn
from chat_core.pipeline.retry import RetryExecutor, is_retryable_error
from chat_core.pipeline.streaming import StreamingUpdateCoordinator
from chat_core.providers.base import ChatProvider, StreamHandle
from chat_core.providers.registry import ProviderRegistry
from chat_core.prompts import load_persona_prompt

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 50
MIN_TOKEN_BUDGET = 1000
MAX_TOKEN_BUDGET = 8000


@dataclass
class ChatPipelineConfig:
    """管理器使用的配置值对象，由调用方显式传入。"""

    token_budget: int = 4000
    default_categories: FrozenSet[HealthCategory] = DEFAULT_CATEGORIES
    system_prompt: Optional[str] = None
    use_streaming: bool = True
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    generate_titles: bool = True

    def __post_init__(self) -> None:
        self.token_budget = max(MIN_TOKEN_BUDGET, min(MAX_TOKEN_BUDGET, int(self.token_budget)))
        self.default_categories = frozenset(HealthCategory.parse(c) for c in self.default_categories)

    @classmethod
    def from_settings(cls, cfg) -> "ChatPipelineConfig":
        prompt = cfg.system_prompt or load_persona_prompt(cfg.persona)
        return cls(
            token_budget=cfg.context_token_budget,
            default_categories=frozenset(HealthCategory.parse(c) for c in cfg.selected_categories),
            system_prompt=prompt,
            use_streaming=cfg.use_streaming,
            retry_policy=RetryPolicy(
                max_attempts=cfg.retry_max_attempts,
                initial_delay=cfg.retry_initial_delay,
                max_delay=cfg.retry_max_delay,
                multiplier=cfg.retry_multiplier,
                jitter=cfg.retry_jitter,
            ),
        )


class MessageLifecycleManager:
    def __init__(
        self,
        store: ConversationStore,
        record_source: HealthRecordSource,
        providers: ProviderRegistry,
        error_reporter: ErrorReporter,
        config: Optional[ChatPipelineConfig] = None,
        formatter: Optional[InstructionFormatter] = None,
        coordinator: Optional[StreamingUpdateCoordinator] = None,
        retry_executor: Optional[RetryExecutor] = None,
        events: Optional[EventBus] = None,
        context_builder: Optional[ContextBuilder] = None,
    ):
        self._store = store
        self._providers = providers
        self._errors = error_reporter
        self._config = config or ChatPipelineConfig()
        self._formatter = formatter or InstructionFormatter()
        self._coordinator = coordinator or StreamingUpdateCoordinator()
        self._retry = retry_executor or RetryExecutor()
        self._context_builder = context_builder or ContextBuilder(record_source)
        self.events = events or EventBus()

        self.conversations: List[Conversation] = []
        self.current: Optional[Conversation] = None
        self.selected_categories = set(self._config.default_categories)
        self.is_offline = False
        self.is_sending = False

    @property
    def config(self) -> ChatPipelineConfig:
        return self._config

    # ---- 会话管理 ----

    async def load_conversations(self) -> List[Conversation]:
        self.conversations = await self._store.fetch_conversations()
        if self.current is not None:
            self.current = self._find_conversation(self.current.id)
        return list(self.conversations)

    async def start_new_conversation(self, title: Optional[str] = None) -> Conversation:
        conv = Conversation.create(title or DEFAULT_TITLE, categories=self.selected_categories)
        await self._store.save_conversation(conv)
        self.conversations.insert(0, conv)
        self.current = conv
        self._log(logging.INFO, "Created new conversation", {"conversation_id": conv.id})
        self._emit("conversation_updated", conv)
        return conv

    def select_conversation(self, conversation_id: str) -> Conversation:
        conv = self._find_conversation(conversation_id)
        if conv is None:
            raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        self.current = conv
        if conv.categories:
            self.selected_categories = set(conv.categories)
        return conv

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._store.delete_conversation(conversation_id)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if self.current is not None and self.current.id == conversation_id:
            self.current = None

    async def archive_conversation(self, conversation_id: str) -> None:
        conv = self._require_conversation(conversation_id)
        conv.archive()
        await self._store.update_conversation(conv)
        self._emit("conversation_updated", conv)

    async def clear_conversation_messages(self, conversation_id: str) -> None:
        conv = self._require_conversation(conversation_id)
        await self._store.clear_messages(conversation_id)
        conv.messages = []
        self._emit("conversation_updated", conv)

    async def select_categories(self, categories: Iterable[Any]) -> None:
        self.selected_categories = {HealthCategory.parse(c) for c in categories}
        if self.current is not None:
            self.current.categories = set(self.selected_categories)
            await self._store.update_conversation(self.current)

    def search_conversations(self, query: str) -> List[Conversation]:
        q = (query or "").strip().lower()
        if not q:
            return list(self.conversations)
        return [
            c for c in self.conversations
            if q in c.title.lower() or any(q in m.content.lower() for m in c.messages)
        ]

    def filter_by_category(self, category: Any) -> List[Conversation]:
        cat = HealthCategory.parse(category)
        return [c for c in self.conversations if cat in c.categories]

    async def get_statistics(self) -> ChatStatistics:
        return await self._store.statistics()

    # ---- 连通性 ----

    def set_offline(self, offline: bool) -> None:
        self.is_offline = offline

    async def check_connection(self) -> bool:
        """仅作参考：探测失败不会阻止发送，离线状态除外。"""
        if self.is_offline:
            return False
        try:
            provider = self._providers.get()
        except BusinessError:
            return False
        return await provider.test_connection()

    # ---- 发送 ----

    async def send_message(self, content: str, use_streaming: Optional[bool] = None) -> Message:
        """发送一条用户消息，返回最终的助手消息。

        前置条件不满足时抛出 NoActiveConversationError / NotConnectedError /
        EmptyMessageError，且不修改任何状态。发送失败时抛出原始错误。
        """

        conv, text = self._check_preconditions(content)
        streaming = self._config.use_streaming if use_streaming is None else use_streaming
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "conversation_id": conv.id}

        user = Message.create(MessageRole.USER, text)
        user.transition(MessageStatus.SENDING)
        try:
            await self._store.add_message(conv.id, user)
        except Exception as exc:
            self._log(logging.ERROR, "Failed to persist user message", log_ctx, error=str(exc))
            self._errors.handle(exc, context=f"persist_message:{conv.id}")
            raise
        conv.add_message(user)
        log_ctx["message_id"] = user.id
        self._log(logging.INFO, "Stored user message", log_ctx, streaming=streaming)
        self._emit("message_updated", conv, user)

        self.is_sending = True
        try:
            try:
                reply = await self._attempt(conv, user, streaming, log_ctx)
            except asyncio.CancelledError:
                await self._fail(conv, user, asyncio.CancelledError("Request cancelled"), log_ctx, report=False)
                raise
            except Exception as exc:
                await self._fail(conv, user, exc, log_ctx)
                raise
            await self._complete(conv, user, reply, log_ctx)
            return reply
        finally:
            self.is_sending = False

    async def retry_message(self, message_id: str, use_streaming: Optional[bool] = None) -> Optional[RetryOutcome]:
        """重试一条失败的用户消息；消息不可重试时为无操作并返回 None。"""

        conv, user = self._locate_message(message_id)
        if conv is None or user is None or not user.can_retry:
            self._log(logging.INFO, "Retry ignored", {"message_id": message_id})
            return None
        if self.is_offline:
            raise NotConnectedError()

        streaming = self._config.use_streaming if use_streaming is None else use_streaming
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": conv.id,
            "message_id": user.id,
        }
        previous_error = user.error_text
        user.transition(MessageStatus.RETRYING)
        user.error_text = None
        try:
            await self._store.add_message(conv.id, user)
        except Exception:
            user.mark_failed(previous_error or "Retry could not be persisted")
            raise
        self._log(logging.INFO, "Retrying message", log_ctx)
        self._emit("message_retrying", conv, user)

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self._log(logging.INFO, "Dispatch retry scheduled", log_ctx, attempt=attempt, delay=round(delay, 3), error=str(error))

        async def attempt() -> Message:
            return await self._attempt(conv, user, streaming, log_ctx)

        self.is_sending = True
        try:
            try:
                outcome = await self._retry.run(
                    attempt,
                    self._config.retry_policy,
                    on_retry=on_retry,
                    log_ctx=log_ctx,
                )
            except asyncio.CancelledError:
                await self._fail(conv, user, asyncio.CancelledError("Retry cancelled"), log_ctx, report=False)
                raise
            if outcome.kind == "success":
                await self._complete(conv, user, outcome.value, log_ctx)
            elif outcome.kind == "failure":
                await self._fail(conv, user, outcome.error, log_ctx)
            else:
                await self._fail(conv, user, asyncio.CancelledError("Retry cancelled"), log_ctx, report=False)
            return outcome
        finally:
            self.is_sending = False

    async def retry_pending(self) -> List[RetryOutcome]:
        """联网恢复后重试所有失败的用户消息。"""
        outcomes: List[RetryOutcome] = []
        if self.is_offline:
            return outcomes
        for conv in list(self.conversations):
            for msg in [m for m in conv.messages if m.can_retry]:
                outcome = await self.retry_message(msg.id)
                if outcome is not None:
                    outcomes.append(outcome)
        return outcomes

    # ---- 内部实现 ----

    def _check_preconditions(self, content: str) -> Tuple[Conversation, str]:
        conv = self.current
        try:
            if conv is None:
                raise NoActiveConversationError()
            if self.is_offline:
                raise NotConnectedError()
            text = (content or "").strip()
            if not text:
                raise EmptyMessageError()
        except PreconditionError as exc:
            self._errors.handle(exc, context="send_message")
            raise
        return conv, text

    async def _attempt(self, conv: Conversation, user: Message, streaming: bool, log_ctx: Dict[str, Any]) -> Message:
        """一次完整的 contextBuilt -> dispatched 过程，返回助手消息（尚未持久化）。"""

        provider = self._providers.get()
        first_turn = is_first_turn(conv)
        categories = conv.categories if conv.categories is not None else self.selected_categories
        ctx = await self._context_builder.build(
            categories,
            self._config.token_budget,
            system_prompt=self._config.system_prompt,
            log_ctx=log_ctx,
        )
        shaped = self._formatter.shape_request(provider.model, user.content, ctx.system_prompt, ctx.text, first_turn)
        self._log(
            logging.INFO,
            "Dispatching message",
            log_ctx,
            backend=provider.name,
            model=provider.model,
            first_turn=first_turn,
            injected=shaped.injected,
            context_tokens=ctx.estimated_tokens,
            streaming=streaming,
        )
        if streaming:
            return await self._dispatch_streaming(conv, provider, shaped, log_ctx)
        return await self._dispatch_blocking(conv, provider, shaped)

    async def _dispatch_blocking(self, conv: Conversation, provider: ChatProvider, shaped: ShapedRequest) -> Message:
        context = shaped.context
        if shaped.system_prompt:
            context = f"System: {shaped.system_prompt}"
            if shaped.context:
                context += f"\n\nContext: {shaped.context}"
        started = time.monotonic()
        response = await provider.send_message(shaped.body, context)
        reply = Message.create(MessageRole.ASSISTANT, response.content)
        reply.token_count = response.token_count
        reply.processing_time = response.response_time or (time.monotonic() - started)
        conv.add_message(reply)
        self._emit("message_updated", conv, reply)
        return reply

    async def _dispatch_streaming(
        self,
        conv: Conversation,
        provider: ChatProvider,
        shaped: ShapedRequest,
        log_ctx: Dict[str, Any],
    ) -> Message:
        placeholder = Message.create(MessageRole.ASSISTANT, "", status=MessageStatus.STREAMING)
        conv.add_message(placeholder)
        self._emit("message_updated", conv, placeholder)
        self._coordinator.bind(asyncio.get_running_loop())

        def sink(text: str) -> None:
            placeholder.content = text
            self._emit("message_updated", conv, placeholder)

        def on_update(text: str) -> None:
            if provider.immediate_updates:
                self._coordinator.apply_immediately(placeholder.id, text, sink)
            else:
                self._coordinator.schedule(placeholder.id, text, sink)

        def on_complete(response: ProviderResponse) -> None:
            self._log(logging.DEBUG, "Stream completed", log_ctx, message_id=placeholder.id)

        handle: Optional[StreamHandle] = None
        try:
            handle = await provider.send_streaming_message(
                shaped.body,
                shaped.context,
                shaped.system_prompt,
                on_update,
                on_complete,
            )
            response = await handle.result()
        except BaseException as exc:
            if handle is not None:
                handle.cancel()
            await self._abandon_placeholder(conv, placeholder, exc, log_ctx)
            raise

        self._coordinator.finalize(placeholder.id, response.content, sink)
        placeholder.token_count = response.token_count
        placeholder.processing_time = response.response_time
        return placeholder

    async def _abandon_placeholder(
        self,
        conv: Conversation,
        placeholder: Message,
        error: BaseException,
        log_ctx: Dict[str, Any],
    ) -> None:
        """流式失败：无内容的占位消息移除，已有部分内容的保留为错误回复。"""

        self._coordinator.discard(placeholder.id)
        if not placeholder.content:
            conv.remove_message(placeholder.id)
            self._emit("conversation_updated", conv)
            return
        placeholder.is_error = True
        placeholder.mark_failed(error_message(error))
        self._emit("message_updated", conv, placeholder)
        try:
            await self._store.add_message(conv.id, placeholder)
        except StoreError as store_exc:
            self._log(logging.ERROR, "Failed to persist partial reply", log_ctx, error=str(store_exc))

    def _drop_reply(self, conv: Conversation, reply: Message) -> None:
        if conv.find_message(reply.id) is not None:
            conv.remove_message(reply.id)
            self._emit("conversation_updated", conv)

    async def _complete(self, conv: Conversation, user: Message, reply: Message, log_ctx: Dict[str, Any]) -> None:
        """先持久化终态快照，成功后才修改工作集；写入失败时撤回回复并把用户消息标记为 failed。"""

        try:
            await self._store.add_message(conv.id, replace(user, status=MessageStatus.SENT, error_text=None))
            await self._store.add_message(conv.id, replace(reply, status=MessageStatus.SENT))
        except asyncio.CancelledError:
            self._drop_reply(conv, reply)
            await self._fail(conv, user, asyncio.CancelledError("Request cancelled"), log_ctx, report=False)
            raise
        except Exception as exc:
            self._log(logging.ERROR, "Failed to persist completed exchange", log_ctx, error=str(exc))
            self._drop_reply(conv, reply)
            await self._fail(conv, user, exc, log_ctx)
            raise
        user.transition(MessageStatus.SENT)
        user.error_text = None
        reply.transition(MessageStatus.SENT)
        self._emit("message_updated", conv, reply)
        self._log(
            logging.INFO,
            "Stored assistant message",
            log_ctx,
            reply_id=reply.id,
            tokens=reply.token_count,
            response_time=reply.processing_time,
        )
        self._emit("message_updated", conv, user)
        self._emit("send_completed", conv, reply)
        await self._maybe_generate_title(conv, user, log_ctx)

    async def _fail(
        self,
        conv: Conversation,
        user: Message,
        error: BaseException,
        log_ctx: Dict[str, Any],
        report: bool = True,
    ) -> None:
        text = error_message(error)
        user.mark_failed(text)
        self._log(logging.WARNING, "Send failed", log_ctx, error=text, code=getattr(error, "code", None))
        try:
            await self._store.add_message(conv.id, user)
        except StoreError as store_exc:
            self._log(logging.ERROR, "Failed to persist failed status", log_ctx, error=str(store_exc))
        if report:
            retry_action = None
            if is_retryable_error(error):
                message_id = user.id

                async def retry_action() -> Optional[RetryOutcome]:
                    return await self.retry_message(message_id)

            self._errors.handle(error, context=f"send_message:{conv.id}", retry_action=retry_action)
        self._emit("send_failed", conv, user, error)

    async def _maybe_generate_title(self, conv: Conversation, user: Message, log_ctx: Dict[str, Any]) -> None:
        if not self._config.generate_titles or conv.title != DEFAULT_TITLE:
            return
        replies = [m for m in conv.messages if m.role == MessageRole.ASSISTANT and m.status == MessageStatus.SENT]
        if len(replies) != 1:
            return
        title = " ".join(user.content.split())
        if len(title) > TITLE_MAX_LENGTH:
            title = title[:TITLE_MAX_LENGTH].rstrip() + "..."
        conv.update_title(title)
        try:
            await self._store.update_conversation(conv)
        except StoreError as exc:
            self._log(logging.WARNING, "Failed to store generated title", log_ctx, error=str(exc))
            return
        self._emit("conversation_updated", conv)

    def _find_conversation(self, conversation_id: str) -> Optional[Conversation]:
        if self.current is not None and self.current.id == conversation_id:
            return self.current
        for c in self.conversations:
            if c.id == conversation_id:
                return c
        return None

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conv = self._find_conversation(conversation_id)
        if conv is None:
            raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        return conv

    def _locate_message(self, message_id: str) -> Tuple[Optional[Conversation], Optional[Message]]:
        candidates = ([self.current] if self.current is not None else []) + self.conversations
        for conv in candidates:
            msg = conv.find_message(message_id)
            if msg is not None:
                return conv, msg
        return None, None

    def _emit(self, kind: str, conv: Conversation, message: Optional[Message] = None, error: Optional[BaseException] = None) -> None:
        self.events.emit(LifecycleEvent(kind=kind, conversation_id=conv.id, message=message, error=error))  # type: ignore[arg-type]

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
