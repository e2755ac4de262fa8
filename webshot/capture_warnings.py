"""Structured records for pipeline stages that failed but did not abort the capture."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

EMULATION_FAILED = "emulation-failed"
SELECTOR_WAIT_TIMEOUT = "selector-wait-timeout"
SCRIPT_FAILED = "script-failed"
AI_REMOVAL_FAILED = "ai-removal-failed"
SCROLL_FAILED = "scroll-failed"
MOCKUP_FAILED = "mockup-failed"


@dataclass(frozen=True, slots=True)
class CaptureWarningEntry:
    """Structured warning surfaced in responses, logs and metrics."""

    code: str
    stage: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "stage": self.stage, "message": self.message}


class WarningCollector:
    """Accumulates degraded-stage warnings for one capture."""

    def __init__(self) -> None:
        self._entries: List[CaptureWarningEntry] = []

    def add(self, code: str, stage: str, error: BaseException | str) -> CaptureWarningEntry:
        message = str(error) if str(error) else type(error).__name__
        entry = CaptureWarningEntry(code=code, stage=stage, message=message)
        self._entries.append(entry)
        return entry

    def extend(self, entries: List[CaptureWarningEntry]) -> None:
        self._entries.extend(entries)

    @property
    def entries(self) -> List[CaptureWarningEntry]:
        return list(self._entries)

    @property
    def codes(self) -> List[str]:
        return [entry.code for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)
