"""FastAPI dependencies for the services created at startup (see main.lifespan)."""

from fastapi import Request

from syncvault.files.service import FileService
from syncvault.sync.engine import SyncEngine


def get_file_service(request: Request) -> FileService:
    return request.app.state.files


def get_sync_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine
