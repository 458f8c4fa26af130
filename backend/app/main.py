# PracticeBook CRM backend entrypoint: task billing ledger and invoice lifecycle API.

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app.api import clients
from backend.app.api import invoices
from backend.app.api import login
from backend.app.api import projects
from backend.app.api import register
from backend.app.api import time_entries
from backend.app.core.logging import configure_logging
from backend.app.core.settings import get_settings
from backend.app.db.base import Base
from backend.app.db.session import engine

settings = get_settings()
configure_logging()

app = FastAPI(title=settings.app_name, version=settings.api_version)

origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(register.router)
app.include_router(login.router)
app.include_router(clients.router)
app.include_router(projects.router)
app.include_router(time_entries.router)
app.include_router(invoices.router)


@app.on_event("startup")
def create_tables():
    Base.metadata.create_all(bind=engine)


@app.get("/")
def read_root():
    return {"app": "PracticeBook CRM backend", "status": "ok"}


@app.get("/health")
def health_check():
    return {"status": "ok"}
