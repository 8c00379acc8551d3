from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Table, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from projecthub.core.config import DEFAULT_TEAM_SIZE
from projecthub.db.base_class import Base

team_members = Table(
    "team_members",
    Base.metadata,
    Column("team_id", ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True),
    Column("student_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Team(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    team_code: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)
    server_id: Mapped[int] = mapped_column(
        ForeignKey("project_servers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    creator_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    max_members: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_TEAM_SIZE)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    server = relationship("ProjectServer", back_populates="teams")
    members = relationship("User", secondary=team_members, back_populates="teams")

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def member_ids(self) -> list[int]:
        return [m.id for m in self.members]
