from pydantic import BaseModel, Field

from projecthub.core.config import DEFAULT_TEAM_SIZE, MAX_TEAM_SIZE, MIN_TEAM_SIZE


class TeamCreate(BaseModel):
    server_id: int
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    max_members: int = Field(default=DEFAULT_TEAM_SIZE, ge=MIN_TEAM_SIZE, le=MAX_TEAM_SIZE)


class TeamJoin(BaseModel):
    team_code: str = Field(min_length=1, max_length=20)


class TeamRead(BaseModel):
    id: int
    name: str
    description: str
    team_code: str
    server_id: int
    creator_id: int
    max_members: int
    member_ids: list[int] = []

    class Config:
        from_attributes = True


class TeamUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    max_members: int | None = Field(default=None, ge=MIN_TEAM_SIZE, le=MAX_TEAM_SIZE)


class TeamDetail(TeamRead):
    server_title: str
    server_code: str
    server_faculty_id: int
