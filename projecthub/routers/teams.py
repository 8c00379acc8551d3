import logging
import secrets
import string

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from projecthub.core.current_user import get_current_user
from projecthub.core.deps import get_db
from projecthub.core.permissions import require_student
from projecthub.models.enums import Role
from projecthub.models.server import ProjectServer
from projecthub.models.submission import Submission
from projecthub.models.task import task_teams
from projecthub.models.team import Team
from projecthub.models.user import User
from projecthub.schemas.team import TeamCreate, TeamDetail, TeamJoin, TeamRead, TeamUpdate

logger = logging.getLogger(__name__)

router = APIRouter()

_CODE_CHARS = string.ascii_uppercase + string.digits


def generate_team_code() -> str:
    return "TEAM-" + "".join(secrets.choice(_CODE_CHARS) for _ in range(8))


def _ensure_server_member(db: Session, server_id: int, student: User) -> ProjectServer:
    server = db.query(ProjectServer).filter(ProjectServer.id == server_id).first()
    if not server:
        raise HTTPException(status_code=404, detail="Project server not found")
    if not any(m.id == student.id for m in server.members):
        raise HTTPException(status_code=403, detail="Join the server before joining a team")
    return server


def _ensure_no_team_in_server(db: Session, server_id: int, student: User) -> None:
    if any(t.server_id == server_id for t in student.teams):
        raise HTTPException(status_code=409, detail="You are already in a team for this server")


@router.post("", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
def create_team(
    payload: TeamCreate,
    db: Session = Depends(get_db),
    me: User = Depends(require_student),
):
    server = _ensure_server_member(db, payload.server_id, me)
    _ensure_no_team_in_server(db, server.id, me)

    team = Team(
        name=payload.name.strip(),
        description=payload.description.strip(),
        team_code=generate_team_code(),
        server_id=server.id,
        creator_id=me.id,
        max_members=payload.max_members,
        members=[me],
    )
    db.add(team)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(team)
    logger.info("team %s created in server %s by %s", team.id, server.id, me.id)
    return team


@router.post("/join", response_model=TeamRead)
def join_team(
    payload: TeamJoin,
    db: Session = Depends(get_db),
    me: User = Depends(require_student),
):
    team = db.query(Team).filter(Team.team_code == payload.team_code.strip().upper()).first()
    if not team:
        raise HTTPException(status_code=404, detail="Invalid team code")

    _ensure_server_member(db, team.server_id, me)
    _ensure_no_team_in_server(db, team.server_id, me)
    if team.member_count >= team.max_members:
        raise HTTPException(status_code=409, detail="Team is full")

    team.members.append(me)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Already a member of this team")

    db.refresh(team)
    logger.info("student %s joined team %s", me.id, team.id)
    return team


@router.get("/server/{server_id}", response_model=list[TeamRead])
def list_server_teams(
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

    return db.query(Team).filter(Team.server_id == server_id).order_by(Team.id).all()


def _get_team(db: Session, team_id: int) -> Team:
    team = db.query(Team).filter(Team.id == team_id).first()
    if not team:
        raise HTTPException(status_code=404, detail="Team not found")
    return team


def _remove_team(db: Session, team: Team) -> None:
    # task assignments and submission links are not reached through Team relationships
    db.execute(task_teams.delete().where(task_teams.c.team_id == team.id))
    db.query(Submission).filter(Submission.team_id == team.id).update(
        {Submission.team_id: None}, synchronize_session=False
    )
    db.delete(team)


@router.get("/{team_id}", response_model=TeamDetail)
def get_team(
    team_id: int,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    team = _get_team(db, team_id)
    server = team.server

    is_owner = server.faculty_id == me.id or me.role == Role.ADMIN
    if not (is_owner or me.id in team.member_ids):
        raise HTTPException(status_code=403, detail="Not a member of this team")

    return TeamDetail(
        **TeamRead.model_validate(team).model_dump(),
        server_title=server.title,
        server_code=server.code,
        server_faculty_id=server.faculty_id,
    )


@router.put("/{team_id}", response_model=TeamRead)
def update_team(
    team_id: int,
    payload: TeamUpdate,
    db: Session = Depends(get_db),
    me: User = Depends(require_student),
):
    team = _get_team(db, team_id)
    if team.creator_id != me.id:
        raise HTTPException(status_code=403, detail="Only the team creator can update the team")

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("max_members") is not None and changes["max_members"] < team.member_count:
        raise HTTPException(
            status_code=400,
            detail=f"max_members cannot be below the current member count ({team.member_count})",
        )

    if changes.get("name") is not None:
        team.name = changes["name"].strip()
    if changes.get("description") is not None:
        team.description = changes["description"].strip()
    if changes.get("max_members") is not None:
        team.max_members = changes["max_members"]

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(team)
    return team


@router.post("/{team_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
def leave_team(
    team_id: int,
    db: Session = Depends(get_db),
    me: User = Depends(require_student),
):
    team = _get_team(db, team_id)
    if me.id not in team.member_ids:
        raise HTTPException(status_code=400, detail="You are not a member of this team")

    team.members = [m for m in team.members if m.id != me.id]
    if not team.members:
        _remove_team(db, team)
        logger.info("team %s removed after its last member %s left", team_id, me.id)
    elif team.creator_id == me.id:
        team.creator_id = team.members[0].id

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("student %s left team %s", me.id, team_id)


@router.delete("/{team_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_team(
    team_id: int,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    team = _get_team(db, team_id)
    allowed = team.creator_id == me.id or team.server.faculty_id == me.id or me.role == Role.ADMIN
    if not allowed:
        raise HTTPException(status_code=403, detail="Only the team creator or server owner can delete the team")

    _remove_team(db, team)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("team %s deleted by %s", team_id, me.id)
