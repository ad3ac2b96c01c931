"""List endpoint helpers: limit/offset parsing, payload shape and ETag revalidation."""
from __future__ import annotations
import hashlib
from typing import Iterable, Tuple
from flask import request, abort, make_response
from sqlalchemy.orm import Query

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def normalize_pagination(limit_raw, offset_raw) -> Tuple[int, int]:
    try:
        limit = int(limit_raw) if limit_raw is not None else DEFAULT_LIMIT
        offset = int(offset_raw) if offset_raw is not None else 0
    except ValueError:
        raise ValueError('limit/offset must be int')
    return max(1, min(limit, MAX_LIMIT)), max(0, offset)


def apply_pagination(q: Query) -> Tuple[Query, int, int, int]:
    try:
        limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    except ValueError as e:
        abort(400, description=str(e))
    total = q.count()
    return q.offset(offset).limit(limit), total, limit, offset


def compute_etag(ids: Iterable[int], total: int, limit: int, offset: int, latest_ts: str = '') -> str:
    seed = f"{list(ids)}|{total}|{limit}|{offset}|{latest_ts or ''}"
    return hashlib.sha256(seed.encode()).hexdigest()[:32]


def build_list_payload(rows: list, total: int, limit: int, offset: int):
    return {
        'data': rows,
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'returned': len(rows)
        }
    }


def make_list_response(rows: list, total: int, limit: int, offset: int, latest_ts=None):
    """JSON list response carrying an ETag; 304 when If-None-Match matches."""
    latest_iso = latest_ts.isoformat() if latest_ts is not None and hasattr(latest_ts, 'isoformat') else ''
    etag = compute_etag([r.get('id') for r in rows], total, limit, offset, latest_iso)
    inm = request.headers.get('If-None-Match')
    if inm and inm.strip('"') == etag:
        resp = make_response('', 304)
    else:
        resp = make_response(build_list_payload(rows, total, limit, offset))
    resp.headers['ETag'] = etag
    return resp
