from __future__ import annotations
"""Paged list responses with ETag / Last-Modified validators.

Routes build a query, then:

    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    resp, etag = make_cached_list_response(rows_json, total, limit, offset, latest_ts)
    return handle_conditional(etag, latest_ts) or resp
"""
import hashlib
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Iterable, Optional, Tuple

from flask import abort, make_response, request

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
TIMESTAMP_TOLERANCE = timedelta(seconds=1)


def normalize_pagination(limit_raw, offset_raw) -> Tuple[int, int]:
    try:
        limit = int(limit_raw) if limit_raw is not None else DEFAULT_LIMIT
        offset = int(offset_raw) if offset_raw is not None else 0
    except ValueError:
        raise ValueError('limit/offset must be int')
    return max(1, min(limit, MAX_LIMIT)), max(0, offset)


def canonicalize_timestamp(dt: datetime) -> datetime:
    """UTC, whole seconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0)


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace('+00:00', 'Z')


def apply_pagination(q):
    try:
        limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    except ValueError as e:
        abort(400, description=str(e))
    total = q.count()
    return q.offset(offset).limit(limit), total, limit, offset


def compute_etag(ids: Iterable[int], total: int, limit: int, offset: int, latest_iso: str = '') -> str:
    seed = f"{list(ids)}|{total}|{limit}|{offset}|{latest_iso}"
    return hashlib.sha256(seed.encode()).hexdigest()[:32]


def build_list_payload(rows: list, total: int, limit: int, offset: int) -> dict:
    return {
        'success': True,
        'data': rows,
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'returned': len(rows),
        },
    }


def _set_validators(resp, etag: str, latest: Optional[datetime]):
    resp.headers['ETag'] = etag
    if latest is not None:
        resp.headers['Last-Modified'] = format_datetime(latest, usegmt=True)
        resp.headers['X-Last-Modified-ISO'] = _iso(latest)
    return resp


def make_cached_list_response(rows: list, total: int, limit: int, offset: int, latest_ts: Optional[datetime] = None):
    latest = canonicalize_timestamp(latest_ts) if latest_ts else None
    etag = compute_etag([r.get('id') for r in rows], total, limit, offset, _iso(latest) if latest else '')
    resp = make_response(build_list_payload(rows, total, limit, offset))
    return _set_validators(resp, etag, latest), etag


def _parse_if_modified_since(header_val: str) -> Optional[datetime]:
    try:
        return canonicalize_timestamp(datetime.fromisoformat(header_val.replace('Z', '+00:00')))
    except ValueError:
        pass
    try:
        return canonicalize_timestamp(parsedate_to_datetime(header_val))
    except (TypeError, ValueError):
        return None


def handle_conditional(etag_value: str, latest_ts: Optional[datetime]):
    """Return a 304 response when If-None-Match (preferred) or If-Modified-Since is satisfied, else None."""
    latest = canonicalize_timestamp(latest_ts) if latest_ts else None
    inm = request.headers.get('If-None-Match')
    if inm:
        if inm.strip().strip('"') == etag_value:
            return _set_validators(make_response('', 304), etag_value, latest)
        return None
    ims_raw = request.headers.get('If-Modified-Since')
    if ims_raw and latest is not None:
        ims = _parse_if_modified_since(ims_raw)
        if ims is not None and latest <= ims + TIMESTAMP_TOLERANCE:
            return _set_validators(make_response('', 304), etag_value, latest)
    return None
