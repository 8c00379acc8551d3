from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Table, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from projecthub.db.base_class import Base

server_members = Table(
    "server_members",
    Base.metadata,
    Column("server_id", ForeignKey("project_servers.id", ondelete="CASCADE"), primary_key=True),
    Column("student_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("joined_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
)


class ProjectServer(Base):
    __tablename__ = "project_servers"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    code: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)
    faculty_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    faculty = relationship("User", back_populates="owned_servers")
    members = relationship("User", secondary=server_members, back_populates="servers")

    teams = relationship("Team", back_populates="server", cascade="all, delete-orphan")
    tasks = relationship("Task", back_populates="server", cascade="all, delete-orphan")
