from pydantic import BaseModel


class ErrorLocation(BaseModel):
    field: str | None = None
    overlay_id: str | None = None
    path: str | None = None
    index: int | None = None


class ErrorInfo(BaseModel):
    code: str
    message: str
    stage: str | None = None
    location: ErrorLocation | None = None
    retryable: bool = False
    suggested_fix: str | None = None
