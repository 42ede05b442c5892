from typing import Any

from pydantic import BaseModel


class OperationError(BaseModel):
    code: str
    message: str


class OperationResult(BaseModel):
    """Envelope returned by every governance operation."""

    ok: bool
    data: Any = None
    error: OperationError | None = None

    @classmethod
    def success(cls, data: Any = None) -> "OperationResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, code: str, message: str) -> "OperationResult":
        return cls(ok=False, error=OperationError(code=code, message=message))
