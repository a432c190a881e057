"""Error taxonomy shared by the request service and the HTTP layer.

Every error carries the HTTP status the API answers with, so handlers never
inspect messages to decide what happened.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400


class AuthError(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404


class InvalidTransition(ServiceError):
    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(f"cannot move request from {current} to {target}")
        self.current = current
        self.target = target


class Conflict(ServiceError):
    """Another writer got there first (lost optimistic update, busy mechanic)."""
    status_code = 409


class GeocodingError(ServiceError):
    status_code = 502
