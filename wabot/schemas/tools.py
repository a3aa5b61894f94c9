from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict


class UpdateContactArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    name_was_confirmed: bool = False

    @property
    def has_name_fields(self) -> bool:
        return bool(self.full_name or self.first_name or self.last_name)


class MarkNameAskedArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question_asked: Optional[str] = None


class TransferToHumanArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reason: Optional[str] = None


ToolArgs = Union[UpdateContactArgs, MarkNameAskedArgs, TransferToHumanArgs]


class ToolCall(BaseModel):
    id: str
    name: str
    input: dict[str, Any] = {}


class ToolResult(BaseModel):
    success: bool
    message: str
    data: Optional[dict[str, Any]] = None
