"""
Data models for the crawl engine
Defines tasks, raw job records, challenge/task states and the run accumulator
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class SearchTask:
    """One unit of crawl work: a search term at a given results page"""

    search_term: str
    location: str = ""
    salary_hint: Optional[int] = None
    page_index: int = 0

    @property
    def is_first_page(self) -> bool:
        return self.page_index == 0

    def __str__(self) -> str:
        return f"'{self.search_term}' in {self.location or 'anywhere'} (page {self.page_index + 1})"


class RawJobRecord(BaseModel):
    """A job card as extracted from the results view, before normalization"""

    model_config = ConfigDict(frozen=True)

    title: str
    company: str
    location: str = ""
    salary: str = ""
    description: str = ""
    external_id: str = ""
    detail_url: str = ""
    posted_date: str = ""
    job_type_text: str = ""
    source: str = "indeed-direct"
    search_term: str = ""
    extracted_at: datetime = Field(default_factory=datetime.now)

    def __str__(self) -> str:
        return f"{self.title} at {self.company} ({self.location})"


class ChallengeState(str, Enum):
    NO_CHALLENGE = "no_challenge"
    CHALLENGE_DETECTED = "challenge_detected"
    RESOLVED = "resolved"
    CAPTCHA_REQUIRED = "captcha_required"
    TIMED_OUT = "timed_out"


class TaskStatus(str, Enum):
    PENDING = "pending"
    INTERACTING = "interacting"
    CHALLENGE_CHECK = "challenge_check"
    EXTRACTING = "extracting"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class PageAdvance(str, Enum):
    ADVANCED = "advanced"
    NO_MORE_PAGES = "no-more-pages"
    ERROR = "error"


@dataclass
class TaskReport:
    """Final outcome of a single task"""

    task: SearchTask
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    session_ids: List[str] = field(default_factory=list)
    records_extracted: int = 0
    reason: str = ""

    @property
    def session_replacements(self) -> int:
        """Number of times the task was moved onto another session"""
        return max(len(self.session_ids) - 1, 0)


@dataclass
class CrawlResult:
    """
    Accumulator for one crawl run.

    Workers hand finished tasks to record_task(); it is the single point where
    records and counters are mutated.
    """

    records: List[RawJobRecord] = field(default_factory=list)
    tasks_processed: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    reports: List[TaskReport] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_task(self, report: TaskReport, records: Optional[List[RawJobRecord]] = None) -> None:
        with self._lock:
            if records:
                self.records.extend(records)
            self.tasks_processed += 1
            if report.status == TaskStatus.FAILED:
                self.tasks_failed += 1
            elif report.status == TaskStatus.SKIPPED:
                self.tasks_skipped += 1
            self.reports.append(report)

    def report_for(self, task: SearchTask) -> Optional[TaskReport]:
        for report in self.reports:
            if report.task == task:
                return report
        return None

    def summary(self) -> dict:
        return {
            "records": len(self.records),
            "tasks_processed": self.tasks_processed,
            "tasks_failed": self.tasks_failed,
            "tasks_skipped": self.tasks_skipped,
        }
