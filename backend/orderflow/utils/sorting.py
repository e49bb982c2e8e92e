from __future__ import annotations
from flask import abort


def apply_multi_sort(query, sort_expr: str | None, allowed: dict, tie_breaker, default: str | None = None):
    """Order a query by a comma separated list of fields, '-' prefix for descending.

    allowed maps public field names to columns; tie_breaker is appended so paging
    stays deterministic. default is used when the request names no sort.
    """
    sort_expr = sort_expr or default
    clauses = []
    for raw in (sort_expr or '').split(','):
        token = raw.strip()
        if not token:
            continue
        desc = token.startswith('-')
        key = token.lstrip('-')
        col = allowed.get(key)
        if col is None:
            abort(400, description=f'Invalid sort field {key}')
        clauses.append(col.desc() if desc else col.asc())
    clauses.append(tie_breaker.desc() if sort_expr and sort_expr.strip().startswith('-') else tie_breaker.asc())
    return query.order_by(*clauses)
