from typing import Literal

from pydantic import BaseModel, EmailStr, Field

from projecthub.models.enums import Role


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    full_name: str | None = None
    role: Literal["student", "faculty"] = "student"


class UserRead(BaseModel):
    id: int
    email: EmailStr
    full_name: str | None = None
    role: Role

    class Config:
        from_attributes = True
