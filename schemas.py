"""
Request schemas for the Task/User API

Each model mirrors one MongoDB collection ("tasks", "users"). Fields the API
requires are still Optional here: missing names, deadlines and emails are
reported by the stores as a 400 with one message, not as a schema error.
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class TaskPayload(BaseModel):
    name: Optional[str] = Field(None, description="Task name, required")
    description: Optional[str] = ""
    deadline: Optional[datetime] = Field(None, description="ISO date string or epoch, required")
    completed: bool = False
    assignedUser: Optional[str] = Field("", description="User id or empty for unassigned")
    assignedUserName: Optional[str] = "unassigned"

    @field_validator("completed", mode="before")
    @classmethod
    def _null_completed(cls, value: Any) -> Any:
        return False if value is None else value

    def as_fields(self) -> dict:
        return self.model_dump()


class UserPayload(BaseModel):
    name: Optional[str] = Field(None, description="Full name, required")
    email: Optional[EmailStr] = Field(None, description="Unique email, required")
    pendingTasks: Any = Field(default_factory=list, description="Task ids; non-arrays count as empty")

    @field_validator("email", mode="before")
    @classmethod
    def _trim_email(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return value or None
        return value

    def as_fields(self) -> dict:
        return self.model_dump()
