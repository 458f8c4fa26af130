"""Time entry routes."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from backend.app.core.errors import ModeConflict, TaskNotFound
from backend.app.core.security import get_current_user
from backend.app.db.session import get_db
from backend.app.models.project import Project
from backend.app.models.task import Task
from backend.app.models.user import User
from backend.app.schemas.time_entry import TimeEntryCreate, TimeEntryRead
from backend.app.services.time_entries import create_time_entry

router = APIRouter(prefix="/time-entries", tags=["time-entries"])


@router.post("/", response_model=TimeEntryRead, status_code=status.HTTP_201_CREATED)
def record_time(payload: TimeEntryCreate, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    if payload.task_id is not None:
        owned = (
            db.query(Task.id)
            .join(Project, Task.project_id == Project.id)
            .filter(Task.id == payload.task_id, Project.owner_id == current_user.id)
            .first()
        )
        if not owned:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    try:
        return create_time_entry(db, current_user.id, **payload.model_dump())
    except TaskNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    except ModeConflict as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot add time entry: Task is set to {exc.current_mode} billing mode",
        )
