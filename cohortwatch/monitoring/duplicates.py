"""
Duplicate Detector: groups students that share a normalized email.

Used to annotate leads for manual merge decisions; it never merges.
"""

from collections import defaultdict
from typing import Iterable

from cohortwatch.monitoring.schemas import Student


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def duplicate_groups(students: Iterable[Student]) -> list[list[str]]:
    """Groups of 2+ student ids with the same email, ordered by first id."""
    by_email: dict[str, list[str]] = defaultdict(list)
    for student in students:
        key = normalize_email(student.email)
        if not key:
            continue
        by_email[key].append(student.id)

    groups = [sorted(ids) for ids in by_email.values() if len(ids) > 1]
    return sorted(groups, key=lambda g: g[0])


def find_duplicates(students: Iterable[Student]) -> dict[str, list[str]]:
    """
    student_id → ids of the other students sharing its email.

    Symmetric: if B is listed under A then A is listed under B. Students with
    a unique or blank email do not appear.
    """
    result: dict[str, list[str]] = {}
    for group in duplicate_groups(students):
        for student_id in group:
            result[student_id] = [other for other in group if other != student_id]
    return result
