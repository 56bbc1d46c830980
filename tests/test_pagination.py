import math

import pytest

from services.pagination import fetch_all


def _source(total):
    rows = list(range(total))
    calls = []

    def query(start, end):
        calls.append((start, end))
        return rows[start:end + 1]

    return query, calls


def test_fetch_all_stops_on_short_page():
    query, calls = _source(2500)
    rows = fetch_all(query, page_size=1000)
    assert rows == list(range(2500))
    assert len(calls) == math.ceil(2500 / 1000)
    assert calls[0] == (0, 999)
    assert calls[-1] == (2000, 2999)


def test_exact_multiple_needs_one_empty_page():
    query, calls = _source(2000)
    rows = fetch_all(query, page_size=1000)
    assert len(rows) == 2000
    assert len(calls) == 3


def test_error_returns_partial_rows():
    def query(start, end):
        if start >= 10:
            raise RuntimeError("boom")
        return list(range(start, end + 1))

    assert fetch_all(query, page_size=10) == list(range(10))


def test_error_propagates_when_requested():
    def query(start, end):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        fetch_all(query, page_size=10, raise_errors=True)


def test_invalid_page_size():
    with pytest.raises(ValueError):
        fetch_all(lambda s, e: [], page_size=0)
