"""
Selection order for processable jobs.

Both engines serve jobs by priority (highest first), then by due time
(jobs without one count as already due and come first), then by
identifier so equal jobs are taken in insertion order.
"""

from typing import Any


def processing_order(model: Any) -> list[Any]:
    """
    ``ORDER BY`` clauses for a mapped job table.

    Args:
        model: A mapped class (or table) with ``priority``, ``until`` and
            ``id`` columns.
    """
    return [
        model.priority.desc(),
        model.until.asc().nulls_first(),
        model.id.asc(),
    ]
