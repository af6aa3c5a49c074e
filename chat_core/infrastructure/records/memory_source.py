"""内存中的健康记录目录，供示例与测试使用。"""

from typing import Iterable, List, Optional, Sequence

from chat_core.domain.models import HealthCategory, RecordSummary


class InMemoryHealthRecordSource:
    def __init__(self, records: Optional[Iterable[RecordSummary]] = None):
        self._records: List[RecordSummary] = list(records or [])
        self.calls: List[Optional[List[HealthCategory]]] = []

    def add(self, record: RecordSummary) -> None:
        self._records.append(record)

    async def fetch(self, categories: Optional[Sequence[HealthCategory]]) -> List[RecordSummary]:
        self.calls.append(None if categories is None else list(categories))
        if categories is None:
            return list(self._records)
        wanted = set(categories)
        return [r for r in self._records if r.category is not None and r.category in wanted]
