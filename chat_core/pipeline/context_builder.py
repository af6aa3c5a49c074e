"""健康上下文构建器。

从 HealthRecordSource 取出所选类别的记录，渲染为一段纯文本，
并在估算 token 数超过预算 90% 时进行压缩。

旧格式（非结构化）文档只在两个条件同时成立时纳入：
所选类别没有匹配到任何结构化记录，且记录源中根本不存在新格式记录。
这样可以避免同一份资料以新旧两种形式重复出现在上下文中。
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from chat_core.domain.models import (
    ChatContext,
    HealthCategory,
    RecordSummary,
    estimate_tokens,
)
from chat_core.domain.records import HealthRecordSource
from chat_core.infrastructure.logging.logger import log_event

COMPRESSION_THRESHOLD = 0.9
CHARS_PER_TOKEN = 4
MAX_LAB_REPORTS = 3
MAX_LEGACY_DOCUMENTS = 5

_DOCUMENT_CATEGORIES = (HealthCategory.IMAGING_REPORT, HealthCategory.HEALTH_CHECKUP)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def truncation_marker(token_budget: int) -> str:
    return f"\n\n... (health context truncated to fit the {token_budget}-token limit)"


def compress_text(text: str, token_budget: int) -> Tuple[str, bool]:
    """超过预算 90% 时截断到行边界并追加截断标记；返回 (文本, 是否压缩)。"""

    if estimate_tokens(text) <= token_budget * COMPRESSION_THRESHOLD:
        return text, False
    limit = int(token_budget * COMPRESSION_THRESHOLD) * CHARS_PER_TOKEN
    cut = text[:limit]
    newline = cut.rfind("\n")
    if newline > 0:
        cut = cut[:newline]
    return cut.rstrip() + truncation_marker(token_budget), True


def _ordered(categories: Iterable[HealthCategory]) -> List[HealthCategory]:
    order = list(HealthCategory)
    return sorted(set(categories), key=order.index)


def _date_key(record: RecordSummary) -> datetime:
    d = record.record_date
    if d is None:
        return _EPOCH
    if d.tzinfo is None:
        return d.replace(tzinfo=timezone.utc)
    return d


def _fmt_date(d: Optional[datetime]) -> str:
    return d.strftime("%b %d, %Y") if d else "Unknown date"


class ContextBuilder:
    """把健康记录组装为有上限的上下文文本。"""

    def __init__(self, record_source: HealthRecordSource):
        self._source = record_source

    async def build(
        self,
        categories: Iterable[HealthCategory],
        token_budget: int,
        system_prompt: Optional[str] = None,
        log_ctx: Optional[dict] = None,
    ) -> ChatContext:
        selected = frozenset(HealthCategory.parse(c) for c in categories)
        ctx = ChatContext(categories=selected, max_tokens=token_budget, system_prompt=system_prompt)
        log_ctx = dict(log_ctx or {})
        try:
            structured, legacy = await self._resolve(selected)
        except Exception as exc:
            # 记录源不可用时降级为空上下文，不影响发送
            log_event(logging.WARNING, "Health record fetch failed", log_ctx, error=str(exc))
            return ctx

        for record in structured:
            if record.category == HealthCategory.PERSONAL_INFO and ctx.personal_info is None:
                ctx.personal_info = record
            elif record.category == HealthCategory.BLOOD_TEST:
                ctx.records.append(record)
            elif record.category in _DOCUMENT_CATEGORIES:
                ctx.documents.append(record)
        ctx.records.sort(key=_date_key, reverse=True)
        ctx.documents.sort(key=lambda r: (r.priority, _date_key(r)), reverse=True)
        ctx.legacy_documents = sorted(legacy, key=_date_key, reverse=True)

        rendered = self.render(ctx)
        ctx.text, ctx.was_compressed = compress_text(rendered, token_budget)
        log_event(
            logging.INFO,
            "Context built",
            log_ctx,
            categories=sorted(c.value for c in selected),
            records=len(ctx.records),
            documents=len(ctx.documents),
            legacy_documents=len(ctx.legacy_documents),
            estimated_tokens=ctx.estimated_tokens,
            compressed=ctx.was_compressed,
        )
        return ctx

    async def _resolve(self, selected: frozenset) -> Tuple[List[RecordSummary], List[RecordSummary]]:
        if not selected:
            return [], []
        matched = [r for r in await self._source.fetch(_ordered(selected)) if not r.is_legacy]
        if matched:
            return matched, []
        everything = await self._source.fetch(None)
        if any(not r.is_legacy for r in everything):
            return [], []
        return [], [r for r in everything if r.is_legacy]

    @staticmethod
    def render(ctx: ChatContext) -> str:
        parts: List[str] = []
        selected = _ordered(ctx.categories)
        if selected:
            names = ", ".join(c.display_name for c in selected)
            parts.append(f"=== Health Context for: {names} ===\n")

        if HealthCategory.PERSONAL_INFO in ctx.categories:
            info = ctx.personal_info
            if info is not None and info.details:
                block = "Personal Information:\n"
                for key, value in info.details.items():
                    block += f"- {key}: {value}\n"
                parts.append(block)
            else:
                parts.append("Personal Information: No data available yet\n")

        if HealthCategory.BLOOD_TEST in ctx.categories:
            if ctx.records:
                block = "Blood Test Results:\n"
                for test in ctx.records[:MAX_LAB_REPORTS]:
                    block += f"\nTest Date: {_fmt_date(test.record_date)}\n"
                    if test.provider_name:
                        block += f"Laboratory: {test.provider_name}\n"
                    if test.values:
                        block += "Results:\n"
                        for v in test.values:
                            line = f"  - {v.name}: {v.value}"
                            if v.unit:
                                line += f" {v.unit}"
                            if v.reference_range:
                                line += f" (ref: {v.reference_range})"
                            if v.is_abnormal:
                                line += " [ABNORMAL]"
                            block += line + "\n"
                parts.append(block)
            else:
                parts.append("Blood Test Results: No data available yet\n")

        if ctx.legacy_documents:
            block = "Available Health Documents:\n"
            for doc in ctx.legacy_documents[:MAX_LEGACY_DOCUMENTS]:
                block += f"- {doc.title}"
                if doc.summary:
                    block += f" ({doc.summary})"
                block += "\n"
            parts.append(block)

        if ctx.documents:
            block = "\nMedical Documents:\n"
            for doc in ctx.documents:
                header = f"{doc.title} ({doc.category.display_name if doc.category else 'Document'}"
                header += f", {_fmt_date(doc.record_date)}"
                if doc.provider_name:
                    header += f", {doc.provider_name}"
                block += f"\n{header})\n"
                if doc.summary:
                    block += f"{doc.summary}\n"
                for section in doc.sections:
                    block += f"\n{section.title}:\n{section.content}\n"
            parts.append(block)
        else:
            for cat in selected:
                if cat in _DOCUMENT_CATEGORIES:
                    parts.append(f"{cat.display_name}: No data available yet\n")

        return "\n".join(parts)
