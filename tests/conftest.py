import os
import shutil
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from projecthub.core.deps import get_db, get_file_storage, get_notification_sink
from projecthub.core.security import hash_password
from projecthub.db.base import Base
from projecthub.main import app
from projecthub.models.enums import Role
from projecthub.models.notification import Notification
from projecthub.models.server import ProjectServer, server_members
from projecthub.models.submission import Submission, SubmissionFile
from projecthub.models.task import Task, task_students, task_teams
from projecthub.models.team import Team, team_members
from projecthub.models.user import User
from projecthub.services.notifications import NotificationDispatcher, RealtimeHub
from projecthub.services.storage import LocalFileStorage

TEST_DB_FILE = "test_projecthub.db"
TEST_DB_URL = f"sqlite:///./{TEST_DB_FILE}"
TEST_UPLOAD_DIR = "test_uploads"

PASSWORD = "password123"

engine = create_engine(
    TEST_DB_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


class FixedClock:
    """Injected wall clock; tests move it explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class RecordingSink:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create a fresh schema once for the whole test session."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    if os.path.exists(TEST_DB_FILE):
        os.remove(TEST_DB_FILE)
    shutil.rmtree(TEST_UPLOAD_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
def seed_data():
    """
    Seed a clean minimal dataset for each test:

    faculty1 owns server "Capstone" (code SRV-TEST01) with team "Alpha"
    (student1, student2); student3 joined the server but has no team.
    """
    db = TestingSessionLocal()
    try:
        # Clear tables (child -> parent); association rows first so ids can be reused
        db.query(Notification).delete()
        db.query(SubmissionFile).delete()
        db.query(Submission).delete()
        db.execute(task_teams.delete())
        db.execute(task_students.delete())
        db.query(Task).delete()
        db.execute(team_members.delete())
        db.query(Team).delete()
        db.execute(server_members.delete())
        db.query(ProjectServer).delete()
        db.query(User).delete()
        db.commit()

        def make_user(email, name, role):
            return User(email=email, full_name=name, role=role, hashed_password=hash_password(PASSWORD))

        faculty = make_user("faculty1@example.com", "Faculty One", Role.FACULTY)
        other_faculty = make_user("faculty2@example.com", "Faculty Two", Role.FACULTY)
        admin = make_user("admin@example.com", "Admin", Role.ADMIN)
        student1 = make_user("student1@example.com", "Student One", Role.STUDENT)
        student2 = make_user("student2@example.com", "Student Two", Role.STUDENT)
        student3 = make_user("student3@example.com", "Student Three", Role.STUDENT)
        db.add_all([faculty, other_faculty, admin, student1, student2, student3])
        db.commit()

        server = ProjectServer(
            title="Capstone",
            code="SRV-TEST01",
            faculty_id=faculty.id,
            members=[student1, student2, student3],
        )
        db.add(server)
        db.commit()

        db.add(
            Team(
                name="Alpha",
                team_code="TEAM-ALPHA001",
                server_id=server.id,
                creator_id=student1.id,
                members=[student1, student2],
            )
        )
        db.commit()

        yield
    finally:
        db.close()


@pytest.fixture()
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


@pytest.fixture()
def users(db):
    return {u.email.split("@")[0]: u for u in db.query(User).all()}


@pytest.fixture()
def server(db):
    return db.query(ProjectServer).filter(ProjectServer.code == "SRV-TEST01").one()


@pytest.fixture()
def team(db):
    return db.query(Team).filter(Team.team_code == "TEAM-ALPHA001").one()


@pytest.fixture()
def clock():
    return FixedClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def storage():
    return LocalFileStorage(TEST_UPLOAD_DIR)


@pytest.fixture()
def hub():
    return RealtimeHub()


@pytest.fixture()
def dispatcher(hub):
    return NotificationDispatcher(TestingSessionLocal, hub)


@pytest.fixture()
def client(dispatcher, storage):
    """Test client that uses the test DB session via dependency override."""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_sink] = lambda: dispatcher
    app.dependency_overrides[get_file_storage] = lambda: storage
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()

