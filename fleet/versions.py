"""
Version comparison for plugin/theme version strings.

Versions are split on '.', '-', '+' and '_' after stripping any leading
non-digit prefix ("v1.2" -> "1.2"). Missing trailing segments count as
"0", so "2.0" == "2.0.0". Numeric segments compare numerically, anything
else compares as plain strings.
"""

import re
from functools import cmp_to_key
from typing import Iterable, List, TypeVar

_LEADING_NON_DIGITS = re.compile(r'^[^0-9]*')
_SEPARATORS = re.compile(r'[.\-+_]')

T = TypeVar('T')


def split_version(version: str) -> List[str]:
    stripped = _LEADING_NON_DIGITS.sub('', (version or '').strip())
    return [part for part in _SEPARATORS.split(stripped) if part]


def compare_versions(a: str, b: str) -> int:
    """Return a negative number, zero or a positive number like cmp()."""
    a_parts = split_version(a)
    b_parts = split_version(b)

    for i in range(max(len(a_parts), len(b_parts))):
        a_part = a_parts[i] if i < len(a_parts) else '0'
        b_part = b_parts[i] if i < len(b_parts) else '0'

        if a_part.isdecimal() and b_part.isdecimal():
            a_num, b_num = int(a_part), int(b_part)
            if a_num != b_num:
                return 1 if a_num > b_num else -1
            continue

        if a_part != b_part:
            return 1 if a_part > b_part else -1

    return 0


def is_version_newer(a: str, b: str) -> bool:
    """True when a is strictly newer than b."""
    return compare_versions(a, b) > 0


def sort_by_newest_version_and_date(items: Iterable[T]) -> List[T]:
    """Newest version first; ties broken by most recent uploaded_at."""
    def _cmp(left, right) -> int:
        version_cmp = compare_versions(right.version, left.version)
        if version_cmp != 0:
            return version_cmp
        if left.uploaded_at == right.uploaded_at:
            return 0
        return 1 if right.uploaded_at > left.uploaded_at else -1

    return sorted(items, key=cmp_to_key(_cmp))
