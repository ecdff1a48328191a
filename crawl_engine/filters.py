"""
Record filters applied before a raw record is accepted.

A filter is any callable taking a RawJobRecord and returning True to keep it.
"""

import logging
import re
from typing import Any, Callable, Iterable, List

from crawl_engine.models import RawJobRecord

logger = logging.getLogger(__name__)

RecordFilter = Callable[[RawJobRecord], bool]

_SALARY_NAME = re.compile(
    r"^\s*(?:estimated|from|up to|starting at)?\s*"
    r"[$£€]?\s?\d[\d,]*(?:\.\d+)?\s*[kK]?"
    r"(?:\s*(?:-|to)\s*[$£€]?\s?\d[\d,]*(?:\.\d+)?\s*[kK]?)?"
    r"\s*(?:(?:an?|per)\s*(?:hour|year|yr|hr|month|week|day))?\s*$",
    re.IGNORECASE,
)


def looks_like_salary(name: str) -> bool:
    """True for company names that are really a pay figure ("$55,000 a year")"""
    text = (name or "").strip()
    if not text or not any(ch.isdigit() for ch in text):
        return False
    return bool(_SALARY_NAME.match(text))


class CompanyExclusionFilter:
    """Rejects records whose company contains any excluded phrase"""

    def __init__(self, excluded: Iterable[str]):
        self.excluded = [phrase.strip().lower() for phrase in excluded if phrase and phrase.strip()]

    def __call__(self, record: RawJobRecord) -> bool:
        company = record.company.lower()
        for phrase in self.excluded:
            if phrase in company:
                logger.info("Excluding job at %s (matched %r)", record.company, phrase)
                return False
        return True


def reject_salary_like_company(record: RawJobRecord) -> bool:
    if looks_like_salary(record.company):
        logger.info("Excluding job with salary-like company name: %s", record.company)
        return False
    return True


def filters_from_config(config: Any) -> List[RecordFilter]:
    filters: List[RecordFilter] = []
    excluded = config.get_excluded_companies()
    if excluded:
        filters.append(CompanyExclusionFilter(excluded))
    if config.is_salary_name_filter_enabled():
        filters.append(reject_salary_like_company)
    return filters
