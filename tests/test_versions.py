from types import SimpleNamespace

import pytest

from fleet.versions import compare_versions, is_version_newer, sort_by_newest_version_and_date, split_version


@pytest.mark.parametrize("a, b, expected", [
    ("1.2.3", "1.2.3", 0),
    ("2.0", "2.0.0", 0),
    ("1.10", "1.9", 1),
    ("v1.2", "1.2", 0),
    ("1.2-beta", "1.2-alpha", 1),
    ("3.0.1", "3.1", -1),
    ("1.²", "1.0", 1),
    ("1.²", "1.²", 0),
])
def test_compare_versions(a, b, expected):
    result = compare_versions(a, b)
    assert (result > 0) - (result < 0) == expected


def test_split_version_ignores_empty_segments():
    assert split_version("1..2") == ["1", "2"]
    assert split_version("") == []


def test_is_version_newer_is_strict():
    assert is_version_newer("1.0.1", "1.0")
    assert not is_version_newer("1.0", "1.0.0")


def test_sort_breaks_version_ties_by_upload_date():
    items = [
        SimpleNamespace(version="1.0", uploaded_at="2024-01-01T00:00:00"),
        SimpleNamespace(version="2.0", uploaded_at="2023-01-01T00:00:00"),
        SimpleNamespace(version="1.0", uploaded_at="2024-06-01T00:00:00"),
    ]

    ordered = sort_by_newest_version_and_date(items)

    assert [(i.version, i.uploaded_at[:7]) for i in ordered] == [
        ("2.0", "2023-01"),
        ("1.0", "2024-06"),
        ("1.0", "2024-01"),
    ]
