from pydantic import BaseModel


class ServerDashboardRow(BaseModel):
    server_id: int
    server_title: str
    total_students: int
    total_teams: int
    total_tasks: int
    active_tasks: int
    total_submissions: int
    ungraded_submissions: int
