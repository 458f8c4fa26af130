"""Project and task routes, including the per-task billing view."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from backend.app.core.security import get_current_user
from backend.app.db.session import get_db
from backend.app.models.client import Client
from backend.app.models.project import Project
from backend.app.models.task import Task
from backend.app.models.user import User
from backend.app.schemas.project import ProjectCreate, ProjectRead, TaskBillingRead, TaskCreate, TaskRead
from backend.app.services.billing_state import TaskBillingState
from backend.app.services.store import BillingStore

router = APIRouter(prefix="/projects", tags=["projects"])


def _get_owned_project(db: Session, project_id: int, owner_id: int) -> Project:
    project = db.query(Project).filter(Project.id == project_id, Project.owner_id == owner_id).first()
    if not project:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


@router.post("/", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(payload: ProjectCreate, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    client = db.query(Client).filter(Client.id == payload.client_id, Client.owner_id == current_user.id).first()
    if not client:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    project = Project(owner_id=current_user.id, client_id=client.id, name=payload.name)
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


@router.post("/{project_id}/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    project_id: int,
    payload: TaskCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = _get_owned_project(db, project_id, current_user.id)
    task = Task(project_id=project.id, **payload.model_dump())
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


@router.get("/{project_id}/tasks", response_model=List[TaskRead])
def list_tasks(project_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    project = _get_owned_project(db, project_id, current_user.id)
    return BillingStore(db).list_project_tasks(project.id)


@router.get("/{project_id}/tasks/billing", response_model=List[TaskBillingRead])
def list_tasks_with_billing(project_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    project = _get_owned_project(db, project_id, current_user.id)
    return TaskBillingState(BillingStore(db)).tasks_with_billing(project.id)
