from typing import Optional


class LedgerError(ValueError):
    status_code = 500


class NotFoundError(LedgerError):
    status_code = 404

    def __init__(self, resource: str, resource_id: object = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class BadRequestError(LedgerError):
    status_code = 400


class ConflictError(BadRequestError):
    status_code = 409


class UnauthorizedError(LedgerError):
    status_code = 401

    def __init__(self, message: str = "Caller identity is required") -> None:
        super().__init__(message)


def require_caller(user_id: Optional[int]) -> int:
    if user_id is None or user_id <= 0:
        raise UnauthorizedError()
    return user_id
