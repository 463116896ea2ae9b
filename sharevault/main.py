from fastapi import FastAPI, Depends, Request, BackgroundTasks, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
import logging
from typing import Callable, Optional

from .auth import AuthHandler
from .config import Settings, settings as default_settings
from .exceptions import UploadError
from .finalizer import Finalizer
from .models import SessionStore
from .notifications import Notifier
from .persistence import FileRepository, InMemoryFileRepository
from .reaper import Reaper
from .receiver import ChunkReceiver
from .schemas import (
    User,
    InitUploadRequest,
    InitUploadResponse,
    ChunkResponse,
    CompleteUploadResponse,
    UploadStatusResponse,
)

logging.basicConfig(
    level=default_settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

def create_app(
    config: Optional[Settings] = None,
    repository: Optional[FileRepository] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> FastAPI:
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.reaper.start()
        yield
        await app.state.reaper.stop()

    app = FastAPI(title="Sharevault Upload API", lifespan=lifespan)

    # Setup upload directories
    Path(config.TEMP_UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
    Path(config.PERM_UPLOAD_DIR).mkdir(parents=True, exist_ok=True)

    store = SessionStore()
    app.state.config = config
    app.state.store = store
    app.state.repository = repository or InMemoryFileRepository()
    app.state.notifier = notifier or Notifier()
    app.state.receiver = ChunkReceiver(store, config, clock)
    app.state.finalizer = Finalizer(store, app.state.repository, app.state.notifier, config, clock)
    app.state.reaper = Reaper(store, config, clock)

    auth = AuthHandler(config)
    get_current_user = auth.get_current_user

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"detail": f"Invalid request: {', '.join(fields)}"},
        )

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "active_uploads": len(store)}

    @app.post("/upload/chunked/init", response_model=InitUploadResponse)
    def init_upload(body: InitUploadRequest, user: User = Depends(get_current_user)):
        upload_id = app.state.receiver.init_upload(user, body.filename, body.total_size, body.metadata)
        return InitUploadResponse(upload_id=upload_id)

    @app.post("/upload/chunked/chunk", response_model=ChunkResponse)
    async def upload_chunk(
        request: Request,
        upload_id: str = Query(..., min_length=1),
        chunk_index: int = Query(...),
        user: User = Depends(get_current_user),
    ):
        data = await request.body()
        # Spool writes block on the session lock and disk, keep them off the event loop
        return await run_in_threadpool(
            app.state.receiver.write_chunk, upload_id, user, chunk_index, data
        )

    @app.get("/upload/chunked/status", response_model=UploadStatusResponse)
    def upload_status(
        upload_id: str = Query(..., min_length=1),
        user: User = Depends(get_current_user),
    ):
        return app.state.receiver.get_status(upload_id, user)

    @app.post("/upload/chunked/complete", response_model=CompleteUploadResponse)
    def complete_upload(
        request: Request,
        background_tasks: BackgroundTasks,
        upload_id: str = Query(..., min_length=1),
        user: User = Depends(get_current_user),
    ):
        file_id = app.state.finalizer.complete(
            upload_id,
            user,
            background_tasks=background_tasks,
            ip_address=request.client.host if request.client else "",
            user_agent=request.headers.get("user-agent", ""),
        )
        return CompleteUploadResponse(file_id=file_id)

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=default_settings.SERVER_HOST,
        port=default_settings.SERVER_PORT,
        log_level=default_settings.LOG_LEVEL.lower()
    )
