from typing import List, Optional, Protocol, Sequence

from .models import HealthCategory, RecordSummary


class HealthRecordSource(Protocol):
    """本地健康记录目录。

    fetch(None) 表示不过滤（返回全部记录，含旧格式文档）；
    fetch([]) 表示过滤条件为空，必须返回空列表。
    """

    async def fetch(self, categories: Optional[Sequence[HealthCategory]]) -> List[RecordSummary]:
        ...
