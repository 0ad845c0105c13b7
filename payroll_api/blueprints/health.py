from flask import Blueprint
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from payroll_api.common.http import ok, fail
from payroll_api.extensions import db

bp = Blueprint("health", __name__, url_prefix="/api/v1")


@bp.get("/health")
def health():
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return fail("database unavailable", status=503, detail=str(e))
    return ok({"status": "ok"})
