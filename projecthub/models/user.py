from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from projecthub.db.base_class import Base
from projecthub.models.enums import Role, enum_column


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, index=True, nullable=False
    )
    full_name: Mapped[str | None] = mapped_column(String(255))
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[Role] = mapped_column(enum_column(Role), nullable=False, default=Role.STUDENT)

    owned_servers = relationship("ProjectServer", back_populates="faculty")
    servers = relationship("ProjectServer", secondary="server_members", back_populates="members")
    teams = relationship("Team", secondary="team_members", back_populates="members")

    submissions = relationship(
        "Submission",
        back_populates="student",
        foreign_keys="Submission.student_id",
    )
