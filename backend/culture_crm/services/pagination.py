# Overview: Shared pagination for list endpoints.

from __future__ import annotations

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def paginate(query, page: int | None = None, limit: int | None = None, serialize=None) -> dict:
    """
    Run `query` for one page and wrap the rows with pagination metadata.

    page is 1-indexed and clamped to >= 1; limit defaults to 50 and is
    clamped to 1..200. serialize turns a row into a dict (to_dict by default).
    """
    limit = min(max(limit or DEFAULT_LIMIT, 1), MAX_LIMIT)
    page = max(page or 1, 1)

    total = query.order_by(None).count()
    total_pages = (total + limit - 1) // limit if total > 0 else 1
    rows = query.offset((page - 1) * limit).limit(limit).all()

    if serialize is None:
        serialize = lambda row: row.to_dict()  # noqa: E731

    return {
        "data": [serialize(row) for row in rows],
        "meta": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
        },
    }
