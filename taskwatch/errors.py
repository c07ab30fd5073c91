"""
Routine error taxonomy

Arithmetic in taskwatch.core never raises; these errors belong to the store
and service boundary:
- RuleValidationError: a row that cannot be normalized into a rule
- RuleNotFoundError: an operation targeted a rule the user does not have
- RemoteSyncError: a strict-mode remote write failed
"""

from typing import Any, Dict, Optional


class RoutineError(Exception):
    """Base class; each subclass fixes its error code and HTTP status."""
    code = "ROUTINE_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class RuleValidationError(RoutineError):
    code = "VALIDATION_ERROR"
    http_status = 400


class RuleNotFoundError(RoutineError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, rule_id: str):
        super().__init__("Repeating rule not found", {"rule_id": rule_id})


class RemoteSyncError(RoutineError):
    code = "REMOTE_SYNC_FAILED"
    http_status = 503


def create_error_response(error: RoutineError) -> Dict[str, Any]:
    """Error envelope returned by the API: ``{"success": false, "error": {...}}``."""
    body = {"code": error.code, "message": error.message, "details": error.details}
    return {"success": False, "error": body}
