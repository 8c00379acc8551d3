import logging
import secrets
import string

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from projecthub.core.current_user import get_current_user
from projecthub.core.deps import get_db
from projecthub.core.permissions import require_faculty, require_student
from projecthub.models.enums import Role, TaskStatus
from projecthub.models.server import ProjectServer
from projecthub.models.user import User
from projecthub.schemas.server import ServerCreate, ServerDetail, ServerJoin, ServerRead, ServerUpdate
from projecthub.schemas.team import TeamRead

logger = logging.getLogger(__name__)

router = APIRouter()

_CODE_CHARS = string.ascii_uppercase + string.digits


def generate_server_code() -> str:
    return "SRV-" + "".join(secrets.choice(_CODE_CHARS) for _ in range(6))


@router.post("", response_model=ServerRead, status_code=status.HTTP_201_CREATED)
def create_server(
    payload: ServerCreate,
    db: Session = Depends(get_db),
    faculty: User = Depends(require_faculty),
):
    # join codes are random; retry the rare collision on the unique index
    for _ in range(5):
        server = ProjectServer(
            title=payload.title.strip(),
            description=payload.description,
            code=generate_server_code(),
            faculty_id=faculty.id,
        )
        db.add(server)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            continue
        db.refresh(server)
        logger.info("server %s (%s) created by %s", server.id, server.code, faculty.id)
        return server

    raise HTTPException(status_code=503, detail="Could not allocate a server code, try again")


@router.get("/me", response_model=list[ServerRead])
def my_servers(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    if me.role == Role.STUDENT:
        return me.servers
    return db.query(ProjectServer).filter(ProjectServer.faculty_id == me.id).order_by(ProjectServer.id).all()


@router.post("/join", response_model=ServerRead)
def join_server(
    payload: ServerJoin,
    db: Session = Depends(get_db),
    me: User = Depends(require_student),
):
    server = db.query(ProjectServer).filter(ProjectServer.code == payload.code.strip().upper()).first()
    if not server:
        raise HTTPException(status_code=404, detail="Invalid server code")
    if any(m.id == me.id for m in server.members):
        raise HTTPException(status_code=409, detail="Already a member of this server")

    server.members.append(me)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Already a member of this server")

    db.refresh(server)
    logger.info("student %s joined server %s", me.id, server.id)
    return server


def _owned_server(db: Session, server_id: int, me: User) -> ProjectServer:
    server = db.query(ProjectServer).filter(ProjectServer.id == server_id).first()
    if not server:
        raise HTTPException(status_code=404, detail="Project server not found")
    if server.faculty_id != me.id and me.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Not the owner of this server")
    return server


@router.get("/{server_id}", response_model=ServerDetail)
def get_server(
    server_id: int,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    server = db.query(ProjectServer).filter(ProjectServer.id == server_id).first()
    if not server:
        raise HTTPException(status_code=404, detail="Project server not found")

    is_owner = server.faculty_id == me.id or me.role == Role.ADMIN
    is_member = any(m.id == me.id for m in server.members)
    if not (is_owner or is_member):
        raise HTTPException(status_code=403, detail="Not a member of this server")

    return ServerDetail(
        **ServerRead.model_validate(server).model_dump(),
        member_ids=[m.id for m in server.members],
        teams=[TeamRead.model_validate(t) for t in sorted(server.teams, key=lambda t: t.id)],
        total_tasks=len(server.tasks),
        active_tasks=sum(1 for t in server.tasks if t.status == TaskStatus.ACTIVE),
    )


@router.put("/{server_id}", response_model=ServerRead)
def update_server(
    server_id: int,
    payload: ServerUpdate,
    db: Session = Depends(get_db),
    faculty: User = Depends(require_faculty),
):
    server = _owned_server(db, server_id, faculty)

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("title") is not None:
        server.title = changes["title"].strip()
    if "description" in changes:
        server.description = changes["description"]

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(server)
    return server


@router.delete("/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_server(
    server_id: int,
    db: Session = Depends(get_db),
    faculty: User = Depends(require_faculty),
):
    server = _owned_server(db, server_id, faculty)
    if server.teams or server.tasks:
        raise HTTPException(status_code=409, detail="Delete the server's teams and tasks first")

    db.delete(server)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("server %s deleted by %s", server_id, faculty.id)
