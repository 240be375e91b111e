"""Tests for pagination DTOs."""

import pytest

from cellar_tracker.services.dto import PaginatedResult, PaginationParams


class TestPaginationParams:
    def test_defaults(self):
        params = PaginationParams()
        assert (params.page, params.per_page) == (1, 50)
        assert params.offset() == 0

    def test_offset(self):
        assert PaginationParams(page=3, per_page=20).offset() == 40

    @pytest.mark.parametrize(
        "page,per_page,message",
        [(0, 10, "page must be"), (1, 0, "per_page must be >= 1"), (1, 1001, "<= 1000")],
    )
    def test_bounds(self, page, per_page, message):
        with pytest.raises(ValueError, match=message):
            PaginationParams(page=page, per_page=per_page)


class TestPaginatedResult:
    def test_navigation(self):
        result = PaginatedResult(items=[1, 2], total=5, page=2, per_page=2)
        assert result.pages == 3
        assert result.has_next
        assert result.has_prev

    def test_empty_has_one_page(self):
        result = PaginatedResult(items=[], total=0, page=1, per_page=50)
        assert result.pages == 1
        assert not result.has_next
        assert not result.has_prev

    def test_single_page(self):
        result = PaginatedResult.single_page(["a", "b", "c"])
        assert (result.total, result.page, result.per_page, result.pages) == (3, 1, 3, 1)

    def test_single_page_empty(self):
        assert PaginatedResult.single_page([]).per_page == 1
