from datetime import datetime

from pydantic import BaseModel, Field

from projecthub.schemas.team import TeamRead


class ServerCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None


class ServerJoin(BaseModel):
    code: str = Field(min_length=1, max_length=20)


class ServerRead(BaseModel):
    id: int
    title: str
    description: str | None = None
    code: str
    faculty_id: int
    created_at: datetime

    class Config:
        from_attributes = True


class ServerUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None


class ServerDetail(ServerRead):
    member_ids: list[int] = []
    teams: list[TeamRead] = []
    total_tasks: int
    active_tasks: int
