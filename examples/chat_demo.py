"""Minimal demonstration of the health chat pipeline."""

import asyncio
from datetime import datetime, timezone

from chat_core import build_manager, chat_once
from chat_core.domain.models import HealthCategory, LabValue, RecordSummary
from chat_core.infrastructure.records.memory_source import InMemoryHealthRecordSource

if __name__ == "__main__":
    records = InMemoryHealthRecordSource(
        [
            RecordSummary(
                id="profile",
                title="Profile",
                category=HealthCategory.PERSONAL_INFO,
                details={"Age": "42", "Blood Type": "O+"},
            ),
            RecordSummary(
                id="lipids-2024",
                title="Lipid Panel",
                category=HealthCategory.BLOOD_TEST,
                record_date=datetime(2024, 3, 2, tzinfo=timezone.utc),
                provider_name="City Lab",
                values=[LabValue(name="LDL", value="142", unit="mg/dL", reference_range="<100", is_abnormal=True)],
            ),
        ]
    )
    manager = build_manager(record_source=records)
    manager.events.subscribe(lambda e: e.kind == "send_failed" and print("Failed:", e.error))

    question = "Is my LDL something I should worry about?"
    result = asyncio.run(chat_once(question, manager=manager))
    print("User:", question)
    print("Assistant:", result["assistant_message"]["content"])
