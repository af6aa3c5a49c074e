import asyncio
import json
import os
import shutil
import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import (
    ChatStatistics,
    Conversation,
    ConversationStore,
    Message,
    MessageRole,
    MessageStatus,
)
from chat_core.domain.exceptions import StoreError
from chat_core.domain.models import HealthCategory


def _iso(d: datetime) -> str:
    return d.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(str(s).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """文件系统存储：conversations/<id>/meta.json + messages.jsonl。

    messages.jsonl 只追加；同一消息 id 多次写入时读取以最后一行为准，
    顺序保持首次出现的位置。

    文件读写通过 asyncio.to_thread 放到工作线程执行，不阻塞事件循环；
    消息在事件循环上先序列化成快照，文件访问由同一把锁串行化。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    async def fetch_conversations(self) -> List[Conversation]:
        return await asyncio.to_thread(self._fetch_all)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await asyncio.to_thread(self._get, conversation_id)

    async def save_conversation(self, conversation: Conversation) -> None:
        lines = [json.dumps(self._message_payload(m), ensure_ascii=False) for m in conversation.messages]
        await asyncio.to_thread(self._save, conversation.id, self._meta_payload(conversation), lines)

    async def update_conversation(self, conversation: Conversation) -> None:
        await asyncio.to_thread(self._update_meta, conversation.id, self._meta_payload(conversation))

    async def delete_conversation(self, conversation_id: str) -> None:
        await asyncio.to_thread(self._delete, conversation_id)

    async def add_message(self, conversation_id: str, message: Message) -> None:
        line = json.dumps(self._message_payload(message), ensure_ascii=False)
        await asyncio.to_thread(self._append_message, conversation_id, line)

    async def clear_messages(self, conversation_id: str) -> None:
        await asyncio.to_thread(self._clear, conversation_id)

    async def search(self, query: str) -> List[Conversation]:
        convs = await self.fetch_conversations()
        q = (query or "").strip().lower()
        if not q:
            return convs
        return [
            c for c in convs
            if q in c.title.lower() or any(q in m.content.lower() for m in c.messages)
        ]

    async def statistics(self) -> ChatStatistics:
        convs = await self.fetch_conversations()
        messages = [m for c in convs for m in c.messages]
        replies = [m for m in messages if m.role == MessageRole.ASSISTANT and not m.is_error]
        times = [m.processing_time for m in replies if m.processing_time is not None]
        cats: Counter = Counter(cat for c in convs for cat in c.categories)
        return ChatStatistics(
            total_conversations=len(convs),
            total_messages=len(messages),
            total_tokens_used=sum(m.token_count or 0 for m in replies),
            average_response_time=sum(times) / len(times) if times else 0.0,
            most_used_categories=[cat for cat, _ in cats.most_common()],
            last_chat_date=max((c.updated_at for c in convs), default=None),
        )

    # ---- 文件操作（工作线程中执行） ----

    def _fetch_all(self) -> List[Conversation]:
        items: List[Conversation] = []
        with self._lock:
            for cdir in sorted(self._conv_root.glob("*/")):
                if not (cdir / "meta.json").exists():
                    continue
                try:
                    items.append(self._load(cdir))
                except StoreError:
                    continue
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    def _get(self, conversation_id: str) -> Conversation:
        cdir = self._conv_root / conversation_id
        with self._lock:
            if not (cdir / "meta.json").exists():
                raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
            return self._load(cdir)

    def _save(self, conversation_id: str, meta: Dict[str, Any], lines: List[str]) -> None:
        cdir = self._conv_root / conversation_id
        with self._lock:
            try:
                cdir.mkdir(parents=True, exist_ok=True)
                (cdir / "messages.jsonl").write_text("".join(line + "\n" for line in lines), encoding="utf-8")
            except OSError as e:
                raise StoreError(code="STORE_WRITE_ERROR", message=str(e))
            self._write_meta_obj(cdir, meta)

    def _update_meta(self, conversation_id: str, meta: Dict[str, Any]) -> None:
        cdir = self._conv_root / conversation_id
        with self._lock:
            if not cdir.exists():
                raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
            self._write_meta_obj(cdir, meta)

    def _delete(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        with self._lock:
            if not cdir.exists():
                raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
            try:
                shutil.rmtree(cdir)
            except OSError as e:
                raise StoreError(code="STORE_DELETE_ERROR", message=str(e))

    def _append_message(self, conversation_id: str, line: str) -> None:
        cdir = self._conv_root / conversation_id
        meta_path = cdir / "meta.json"
        with self._lock:
            if not meta_path.exists():
                raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
            try:
                with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise StoreError(code="STORE_WRITE_ERROR", message=str(e))
            meta["updated_at"] = _iso(datetime.now(timezone.utc))
            self._write_meta_obj(cdir, meta)

    def _clear(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        with self._lock:
            if not cdir.exists():
                raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
            try:
                (cdir / "messages.jsonl").write_text("", encoding="utf-8")
            except OSError as e:
                raise StoreError(code="STORE_WRITE_ERROR", message=str(e))

    # ---- 内部实现 ----

    def _load(self, cdir: Path) -> Conversation:
        try:
            data = json.loads((cdir / "meta.json").read_text(encoding="utf-8"))
            conv = Conversation(
                id=data["id"],
                title=data.get("title") or "",
                categories={HealthCategory.parse(c) for c in data.get("categories") or []},
                archived=bool(data.get("archived", False)),
                created_at=_parse_dt(data["created_at"]),
                updated_at=_parse_dt(data["updated_at"]),
            )
        except (OSError, ValueError, KeyError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))
        conv.messages = self._read_messages(cdir)
        return conv

    def _read_messages(self, cdir: Path) -> List[Message]:
        msgs_path = cdir / "messages.jsonl"
        latest: Dict[str, Message] = {}
        if not msgs_path.exists():
            return []
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))
        for line in lines:
            if not line.strip():
                continue
            try:
                msg = self._to_message(json.loads(line))
            except (ValueError, KeyError):
                continue
            # dict 保留首次插入顺序，重复写入只更新值
            latest[msg.id] = msg
        return list(latest.values())

    @staticmethod
    def _meta_payload(conv: Conversation) -> Dict[str, Any]:
        return {
            "id": conv.id,
            "title": conv.title,
            "categories": sorted(c.value for c in conv.categories),
            "archived": conv.archived,
            "created_at": _iso(conv.created_at),
            "updated_at": _iso(conv.updated_at),
        }

    def _write_meta_obj(self, cdir: Path, obj: Dict[str, Any]) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _message_payload(m: Message) -> Dict[str, Any]:
        return {
            "id": m.id,
            "role": m.role.value,
            "content": m.content,
            "status": m.status.value,
            "created_at": _iso(m.created_at),
            "error_text": m.error_text,
            "token_count": m.token_count,
            "processing_time": m.processing_time,
            "is_error": m.is_error,
        }

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> Message:
        token_count: Optional[int] = data.get("token_count")
        return Message(
            id=data["id"],
            role=MessageRole(data["role"]),
            content=data.get("content") or "",
            status=MessageStatus(data.get("status") or "sent"),
            created_at=_parse_dt(data["created_at"]),
            error_text=data.get("error_text"),
            token_count=int(token_count) if token_count is not None else None,
            processing_time=data.get("processing_time"),
            is_error=bool(data.get("is_error", False)),
        )
