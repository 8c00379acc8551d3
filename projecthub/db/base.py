# Import all models here so Base.metadata sees every table (used by tests and alembic)
from projecthub.db.base_class import Base  # noqa: F401
from projecthub.models import notification, server, submission, task, team, user  # noqa: F401
