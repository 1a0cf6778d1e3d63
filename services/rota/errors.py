# ============================================================
# errors.py — Domain errors
# ------------------------------------------------------------
# Raised by the schedule / gate / state machine layers and turned
# into HTTPException by api.py using `status_code`.
# ============================================================


class RotaError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RotaError, ValueError):
    """Malformed input: bad time range, missing selection, negative tokens."""
    status_code = 400


class NotFoundError(RotaError):
    status_code = 404


class AccessDeniedError(RotaError):
    """No active schedule block covers the holder right now."""
    status_code = 403


class ScheduleConflictError(RotaError):
    """Candidate block overlaps another block of the same resource and day."""
    status_code = 409


class StateConflictError(RotaError):
    """The resource no longer is in the state the caller observed."""
    status_code = 409


class LimitExceededError(RotaError):
    """Reported usage exceeds the token ceiling of the session's block."""
    status_code = 422
