"""生命周期事件通道。

管理器不直接驱动任何 UI 框架，而是发出事件，由 UI 层订阅。
"""

from dataclasses import dataclass
from typing import Callable, List, Literal, Optional

from chat_core.domain.conversation import Message
from chat_core.infrastructure.logging.logger import logger


@dataclass
class LifecycleEvent:
    """管理器发出的生命周期事件。

    kind:
        - "message_updated": 消息内容或状态发生变化（含流式增量）。
        - "send_completed": 一次发送（或重试）成功结束。
        - "send_failed": 一次发送（或重试）失败，error 为原始异常。
        - "message_retrying": 失败的用户消息进入重试。
        - "conversation_updated": 会话标题、归档或消息列表发生变化。
    """

    kind: Literal["message_updated", "send_completed", "send_failed", "message_retrying", "conversation_updated"]
    conversation_id: str
    message: Optional[Message] = None
    error: Optional[BaseException] = None


Listener = Callable[[LifecycleEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册监听器，返回取消订阅函数。"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: LifecycleEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # 监听器异常不能中断管线
                logger.exception("Event listener failed", extra={"extra": {"kind": event.kind}})
