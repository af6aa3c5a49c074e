"""流式更新协调器。

Provider 的增量回调可能来自任意线程，这里负责：

- 把回调交接到事件循环（唯一允许修改工作集的上下文）；
- 按固定间隔（默认约 67ms，即 15Hz）节流，最多每个间隔应用一次；
- 每次 schedule 递增该消息的序号并捕获自己的序号，到点时只有序号
  仍是最新的更新才会被应用，过期的更新直接丢弃；
- finalize 取消挂起的更新，立即无条件地应用最终内容，重复调用无效。
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from chat_core.infrastructure.logging.logger import logger

Sink = Callable[[str], None]
DEFAULT_INTERVAL = 1.0 / 15.0
# 记住最近结束的消息 id，迟到的更新据此丢弃
CLOSED_HISTORY = 1024


@dataclass
class StreamingSession:
    """单条流式消息的节流状态。"""

    message_id: str
    sequence: int = 0
    pending: Optional[asyncio.TimerHandle] = None
    last_applied_at: Optional[float] = None
    applied_sequence: int = 0

    def cancel_pending(self) -> None:
        if self.pending is not None:
            self.pending.cancel()
            self.pending = None


class StreamingUpdateCoordinator:
    def __init__(self, interval: float = DEFAULT_INTERVAL, loop: Optional[asyncio.AbstractEventLoop] = None):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._loop = loop
        self._sessions: Dict[str, StreamingSession] = {}
        self._closed: "OrderedDict[str, None]" = OrderedDict()

    @property
    def interval(self) -> float:
        return self._interval

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """绑定消费者所在的事件循环；跨线程 schedule 之前必须已绑定。"""
        self._loop = loop

    def session(self, message_id: str) -> Optional[StreamingSession]:
        return self._sessions.get(message_id)

    def has_pending(self, message_id: str) -> bool:
        s = self._sessions.get(message_id)
        return bool(s and s.pending is not None)

    # ---- 对外操作 ----

    def schedule(self, message_id: str, content: str, sink: Sink) -> None:
        """可在任意线程调用；实际排程在事件循环上进行。"""
        loop = self._require_loop()
        if self._on_loop(loop):
            self._schedule_on_loop(message_id, content, sink)
        else:
            loop.call_soon_threadsafe(self._schedule_on_loop, message_id, content, sink)

    def apply_immediately(self, message_id: str, content: str, sink: Sink) -> None:
        """回调本就运行在事件循环上的后端使用的旁路：不节流，直接应用。"""
        if message_id in self._closed:
            return
        session = self._sessions.setdefault(message_id, StreamingSession(message_id))
        session.sequence += 1
        session.cancel_pending()
        self._apply(session, session.sequence, content, sink)

    def finalize(self, message_id: str, content: str, sink: Sink) -> bool:
        """应用终态内容并释放会话；返回 False 表示此前已 finalize 过。"""
        if message_id in self._closed:
            return False
        session = self._close(message_id)
        updates = session.sequence + 1 if session is not None else 1
        sink(content)
        logger.debug("Streaming finalized", extra={"extra": {"message_id": message_id, "updates": updates}})
        return True

    def discard(self, message_id: str) -> None:
        """丢弃会话且不应用任何内容（失败路径使用）。"""
        self._close(message_id)

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # ---- 内部实现 ----

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @staticmethod
    def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def _schedule_on_loop(self, message_id: str, content: str, sink: Sink) -> None:
        if message_id in self._closed:
            return
        session = self._sessions.get(message_id)
        if session is None:
            session = self._sessions[message_id] = StreamingSession(message_id)
        session.sequence += 1
        seq = session.sequence
        session.cancel_pending()
        loop = self._require_loop()
        delay = 0.0
        if session.last_applied_at is not None:
            delay = max(0.0, session.last_applied_at + self._interval - loop.time())
        session.pending = loop.call_later(delay, self._fire, message_id, seq, content, sink)

    def _fire(self, message_id: str, seq: int, content: str, sink: Sink) -> None:
        session = self._sessions.get(message_id)
        if session is None:
            return
        if seq != session.sequence:
            return
        session.pending = None
        self._apply(session, seq, content, sink)

    def _close(self, message_id: str) -> Optional[StreamingSession]:
        session = self._sessions.pop(message_id, None)
        if session is not None:
            session.cancel_pending()
        self._closed[message_id] = None
        while len(self._closed) > CLOSED_HISTORY:
            self._closed.popitem(last=False)
        return session

    def _apply(self, session: StreamingSession, seq: int, content: str, sink: Sink) -> None:
        loop = self._require_loop()
        session.last_applied_at = loop.time()
        session.applied_sequence = seq
        sink(content)
