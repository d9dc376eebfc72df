from typing import Optional


class NotFoundError(ValueError):
    """Entity is absent or belongs to another user; callers cannot tell which."""


class ValidationError(ValueError):
    def __init__(self, message: str, code: str = "malformed_field") -> None:
        super().__init__(message)
        self.code = code


class ConflictError(ValidationError):
    def __init__(self, message: str, code: str = "duplicate_budget") -> None:
        super().__init__(message, code)


class AuthenticationError(ValueError):
    pass


class PersistenceFailure(RuntimeError):
    def __init__(self, message: str = "Storage unavailable", cause: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.cause = cause
