# payroll_api/common/paging.py
from flask import request

DEFAULT_PAGE = 1
DEFAULT_SIZE = 20
MAX_SIZE = 200

def page_limit():
    try:
        page = max(int(request.args.get("page", DEFAULT_PAGE)), 1)
    except Exception:
        page = DEFAULT_PAGE
    try:
        size = int(request.args.get("size", DEFAULT_SIZE))
        size = max(1, min(size, MAX_SIZE))
    except Exception:
        size = DEFAULT_SIZE
    return page, size

def paginate(q, order_by=None):
    """Apply page/size from the query string. Returns (rows, meta)."""
    page, size = page_limit()
    total = q.count()
    if order_by is not None:
        q = q.order_by(order_by)
    rows = q.offset((page - 1) * size).limit(size).all()
    return rows, {"page": page, "size": size, "total": total}
