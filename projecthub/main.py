import logging

from fastapi import FastAPI

from projecthub.core.errors import register_exception_handlers
from projecthub.core.logging_middleware import LoggingMiddleware
from projecthub.db.init_db import init_db
from projecthub.routers.analytics import router as analytics_router
from projecthub.routers.auth import router as auth_router
from projecthub.routers.dashboard import router as dashboard_router
from projecthub.routers.notifications import router as notifications_router
from projecthub.routers.servers import router as servers_router
from projecthub.routers.submissions import router as submissions_router
from projecthub.routers.tasks import router as tasks_router
from projecthub.routers.teams import router as teams_router

logging.basicConfig(level=logging.INFO)

app = FastAPI(title="Project Hub")

# Middleware
app.add_middleware(LoggingMiddleware)

# Domain errors -> 400/403/404/409
register_exception_handlers(app)


# Health check
@app.get("/health")
def health():
    return {"status": "ok"}


# Startup event
@app.on_event("startup")
def on_startup():
    init_db()


# Include routers
app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(servers_router, prefix="/servers", tags=["servers"])
app.include_router(teams_router, prefix="/teams", tags=["teams"])
app.include_router(tasks_router, prefix="/tasks", tags=["tasks"])
app.include_router(submissions_router, prefix="/submissions", tags=["submissions"])
app.include_router(notifications_router, prefix="/notifications", tags=["notifications"])
app.include_router(analytics_router, prefix="/analytics", tags=["analytics"])

# Faculty dashboard (no prefix, route already defines full path)
app.include_router(dashboard_router)
