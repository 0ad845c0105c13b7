# payroll_api/common/errors.py
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from payroll_api.common.http import fail
from payroll_api.extensions import db


class APIError(Exception):
    """Custom API Error class."""
    status_code = 400
    default_code = "BAD_REQUEST"

    def __init__(self, message, code=None, status_code=None, payload=None):
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload


class BadRequestError(APIError):
    status_code = 400
    default_code = "BAD_REQUEST"


class ForbiddenError(APIError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(APIError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(APIError):
    """Run state changed between read and write (lost compare-and-swap)."""
    status_code = 409
    default_code = "CONFLICT"


class DuplicatePayslipError(BadRequestError):
    status_code = 409
    default_code = "DUPLICATE_PAYSLIP"


class CalculationError(BadRequestError):
    default_code = "CALCULATION_ERROR"


class ExternalDeliveryFailure(APIError):
    """One recipient could not be reached. Never fatal to a dispatch batch."""
    status_code = 502
    default_code = "DELIVERY_FAILED"


def register_error_handlers(app):
    @app.errorhandler(APIError)
    def _api_error(e: APIError):
        return fail(message=e.message, status=e.status_code, code=e.code, detail=e.payload)

    @app.errorhandler(HTTPException)
    def _http(e: HTTPException):
        return fail(e.description or e.name, status=e.code or 500)

    @app.errorhandler(IntegrityError)
    def _integrity(e: IntegrityError):
        # 409 for unique/FK violations
        db.session.rollback()
        return fail("Duplicate or FK constraint failed", status=409, code="CONSTRAINT_ERROR",
                    detail=str(e.orig) if getattr(e, "orig", None) else str(e))

    @app.errorhandler(Exception)
    def _500(e: Exception):
        app.logger.exception(e)
        return fail("Internal server error", status=500)
