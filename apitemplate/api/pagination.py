from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional
from urllib.parse import urlencode


@dataclass(frozen=True)
class PageParams:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def _coerce_int(raw: Optional[str]) -> int:
    try:
        return int(raw) if raw is not None else 0
    except (TypeError, ValueError):
        return 0


def parse_pagination(
    page: Optional[str],
    limit: Optional[str],
    *,
    default_limit: int = 10,
    max_limit: int = 100,
) -> PageParams:
    """Read ``?page=&limit=``; junk or non-positive values fall back to defaults."""
    page_num = _coerce_int(page)
    limit_num = _coerce_int(limit)
    if page_num < 1:
        page_num = 1
    if limit_num < 1:
        limit_num = default_limit
    return PageParams(page=page_num, limit=min(limit_num, max_limit))


def _page_url(path: str, query: Mapping[str, str], page: int) -> str:
    params = dict(query)
    params["page"] = str(page)
    return f"{path}?{urlencode(sorted(params.items()))}"


def paginated_payload(
    items: List[Any],
    *,
    params: PageParams,
    total: int,
    path: str,
    query: Optional[Mapping[str, str]] = None,
) -> dict[str, Any]:
    """Laravel-style page object.

    Other query parameters are carried over into the page links; only ``page``
    is replaced.
    """
    query = dict(query or {})
    per_page = max(1, params.limit)
    current = params.page
    last_page = max(1, (total + per_page - 1) // per_page)

    first = (current - 1) * per_page + 1
    to = min(first + per_page - 1, total)
    if first > total:
        first = 0
        to = 0

    return {
        "current_page": current,
        "data": items,
        "first_page_url": _page_url(path, query, 1),
        "from": first,
        "last_page": last_page,
        "last_page_url": _page_url(path, query, last_page),
        "next_page_url": _page_url(path, query, current + 1) if current < last_page else None,
        "path": path,
        "per_page": per_page,
        "prev_page_url": _page_url(path, query, current - 1) if current > 1 else None,
        "to": to,
        "total": total,
    }
