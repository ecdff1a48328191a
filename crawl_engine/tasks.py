"""
Task generation for search crawls
"""

from typing import Dict, List, Optional, Sequence

from crawl_engine.models import SearchTask


def generate_tasks(
    search_terms: Sequence[str],
    page_count_per_term: int,
    location: str = "",
    salary_hint: Optional[int] = None,
) -> List[SearchTask]:
    """Build term-major, page-minor search tasks"""
    tasks = []
    for term in search_terms:
        for page_index in range(max(int(page_count_per_term), 0)):
            tasks.append(
                SearchTask(
                    search_term=term,
                    location=location,
                    salary_hint=salary_hint,
                    page_index=page_index,
                )
            )
    return tasks


def group_by_term(tasks: Sequence[SearchTask]) -> List[List[SearchTask]]:
    """
    Group tasks into per-term chains, keeping first-seen order.

    Pages of one term are walked in sequence since page N is reached from the
    results view of page N-1. A chain never holds the same page twice: a term
    listed more than once gets one chain per listing.
    """
    chains: List[List[SearchTask]] = []
    by_key: Dict[tuple, List[List[SearchTask]]] = {}
    for task in tasks:
        candidates = by_key.setdefault((task.search_term, task.location), [])
        for chain in candidates:
            if all(t.page_index != task.page_index for t in chain):
                chain.append(task)
                break
        else:
            chain = [task]
            candidates.append(chain)
            chains.append(chain)
    return [sorted(chain, key=lambda t: t.page_index) for chain in chains]
