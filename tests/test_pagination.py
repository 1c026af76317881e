import pytest

from apitemplate.api.pagination import PageParams, paginated_payload, parse_pagination


class TestParsePagination:
    def test_defaults(self):
        assert parse_pagination(None, None) == PageParams(page=1, limit=10)

    def test_explicit_values(self):
        params = parse_pagination("3", "25")
        assert params == PageParams(page=3, limit=25)
        assert params.offset == 50

    @pytest.mark.parametrize("page,limit", [("abc", "xyz"), ("0", "0"), ("-2", "-5")])
    def test_junk_falls_back_to_defaults(self, page, limit):
        assert parse_pagination(page, limit) == PageParams(page=1, limit=10)

    def test_limit_is_capped(self):
        assert parse_pagination("1", "1000", max_limit=100).limit == 100

    def test_custom_default_limit(self):
        assert parse_pagination(None, None, default_limit=20).limit == 20


class TestPaginatedPayload:
    def test_middle_page(self):
        payload = paginated_payload(
            list(range(10)),
            params=PageParams(page=2, limit=10),
            total=35,
            path="/api/v1/users",
        )

        assert payload["current_page"] == 2
        assert payload["from"] == 11
        assert payload["to"] == 20
        assert payload["last_page"] == 4
        assert payload["per_page"] == 10
        assert payload["total"] == 35
        assert payload["path"] == "/api/v1/users"
        assert payload["first_page_url"] == "/api/v1/users?page=1"
        assert payload["last_page_url"] == "/api/v1/users?page=4"
        assert payload["next_page_url"] == "/api/v1/users?page=3"
        assert payload["prev_page_url"] == "/api/v1/users?page=1"

    def test_last_partial_page(self):
        payload = paginated_payload(
            list(range(5)), params=PageParams(page=4, limit=10), total=35, path="/u"
        )
        assert payload["from"] == 31
        assert payload["to"] == 35
        assert payload["next_page_url"] is None

    def test_empty_result(self):
        payload = paginated_payload([], params=PageParams(page=1, limit=10), total=0, path="/u")

        assert payload["last_page"] == 1
        assert payload["from"] == 0
        assert payload["to"] == 0
        assert payload["next_page_url"] is None
        assert payload["prev_page_url"] is None

    def test_page_past_the_end(self):
        payload = paginated_payload([], params=PageParams(page=9, limit=10), total=12, path="/u")
        assert payload["from"] == 0
        assert payload["to"] == 0
        assert payload["prev_page_url"] == "/u?page=8"

    def test_other_query_params_are_preserved(self):
        payload = paginated_payload(
            [],
            params=PageParams(page=1, limit=5),
            total=12,
            path="/u",
            query={"limit": "5", "page": "1"},
        )
        assert payload["next_page_url"] == "/u?limit=5&page=2"
