from typing import Optional


class ServiceError(Exception):
    """Base for errors that map onto an HTTP status and a client-facing message."""

    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = str(message or "error")
        if status_code is not None:
            self.status_code = int(status_code)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status_code}, {self.message!r})"
