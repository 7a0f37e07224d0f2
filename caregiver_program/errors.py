from typing import Any


class ProgramError(Exception):
    """
    Base for every rejection raised by the program services. Raised before
    any record is written, so callers can always retry safely.
    """

    status_code = 500

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.detail, **self.extra}


class ValidationError(ProgramError):
    status_code = 400


class ForbiddenError(ProgramError):
    status_code = 403


class NotFoundError(ProgramError):
    status_code = 404


class StateConflictError(ProgramError):
    status_code = 409
