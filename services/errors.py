"""
Named errors shared across the comment analysis services.

Every error carries:
- a stable `name` (used in logs, events and the queue dashboard)
- a validated `data` payload (pydantic model)

Causes are attached with `raise NewError(...) from original`, so the
full chain can be walked later by the queue error serializer.
"""

from __future__ import annotations

from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, ConfigDict


class ErrorData(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    message: Optional[str] = None


class NamedError(Exception):
    name: ClassVar[str] = "UnknownError"
    data_model: ClassVar[type[BaseModel]] = ErrorData

    def __init__(self, data: Optional[Dict[str, Any]] = None, message: Optional[str] = None):
        self.data = self.data_model.model_validate(data or {})
        super().__init__(message or getattr(self.data, "message", None) or self.name)

    @property
    def message(self) -> str:
        return str(self)

    def to_object(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "data": self.data.model_dump(mode="json", by_alias=True, exclude_none=True),
        }


class InvalidEnvironmentData(ErrorData):
    problems: list[str]


class InvalidEnvironmentError(NamedError):
    name = "InvalidEnvironmentError"
    data_model = InvalidEnvironmentData
