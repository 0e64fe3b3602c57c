import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request, Response, status
from fastapi.responses import JSONResponse

from common.config import settings
from common.domain import MAX_ID, TaskStatus, User
from common.repository import NotFoundError, Repository, build_repository
from common.tasks import InvalidTextError, TaskService
from common.telegram import TelegramClient
from common.timezones import InvalidTimezoneError, resolve_timezone
from api.schemas import TaskCreate, TaskList, TaskOut, TaskUpdate, UserCreate, UserList, UserOut
from bot.main import build_poller

logger = logging.getLogger(__name__)

# One repository per process, shared by the HTTP handlers and the long-poll loop.
repository: Repository = build_repository(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.APP_ENV == "dev":
        await repository.init_schema()
    stop = asyncio.Event()
    client: Optional[TelegramClient] = None
    poller: Optional[asyncio.Task] = None
    if settings.telegram_enabled:
        client = TelegramClient()
        poller = asyncio.create_task(build_poller(client, repository).run(stop))
    else:
        logger.info("TELEGRAM_BOT_TOKEN not set, long polling disabled")
    try:
        yield
    finally:
        stop.set()
        if poller is not None:
            await poller
        if client is not None:
            await client.aclose()
        await repository.close()


app = FastAPI(title="Reminder Tasks API", lifespan=lifespan)


def get_repository() -> Repository:
    return repository


def get_task_service(repo: Repository = Depends(get_repository)) -> TaskService:
    return TaskService(repo)

# --- Middleware & Error Mapping ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "not_found"})


@app.exception_handler(InvalidTextError)
async def invalid_text_handler(request: Request, exc: InvalidTextError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "text"})


@app.exception_handler(InvalidTimezoneError)
async def invalid_timezone_handler(request: Request, exc: InvalidTimezoneError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "timezone"})

# --- Health ---

@app.get("/healthz")
async def healthz():
    return {"ok": "true"}

# --- Users ---

@app.get("/users", response_model=UserList)
async def list_users(repo: Repository = Depends(get_repository)):
    return {"items": await repo.list_users()}


@app.post("/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
async def create_user(payload: UserCreate, repo: Repository = Depends(get_repository)):
    tz_name = payload.timezone.strip() or "UTC"
    resolve_timezone(tz_name)
    return await repo.create_user(User(
        telegram_user_id=payload.telegram_user_id,
        chat_id=payload.chat_id,
        timezone=tz_name,
    ))

# --- Tasks ---

@app.get("/tasks", response_model=TaskList)
async def list_tasks(
    user_id: int = Query(..., gt=0, le=MAX_ID),
    status: Optional[TaskStatus] = None,
    tz: str = "UTC",
    service: TaskService = Depends(get_task_service),
):
    return {"items": await service.list_tasks(user_id, status, tz)}


@app.post("/tasks", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def create_task(payload: TaskCreate, tz: str = "UTC", service: TaskService = Depends(get_task_service)):
    try:
        task = await service.create(payload.user_id, payload.text, payload.due_at, payload.remind_at, tz)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user")
    if payload.status == TaskStatus.done:
        task = await service.mark_done(task.id, tz)
    return task


@app.get("/tasks/{task_id}", response_model=TaskOut)
async def get_task(task_id: int = Path(..., gt=0, le=MAX_ID), tz: str = "UTC", service: TaskService = Depends(get_task_service)):
    return await service.get_task(task_id, tz)


@app.patch("/tasks/{task_id}", response_model=TaskOut)
async def update_task(
    payload: TaskUpdate,
    task_id: int = Path(..., gt=0, le=MAX_ID),
    tz: str = "UTC",
    service: TaskService = Depends(get_task_service),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    if "status" in changes and changes["status"] is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="status")
    return await service.update(task_id, tz, **changes)


@app.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: int = Path(..., gt=0, le=MAX_ID), service: TaskService = Depends(get_task_service)):
    await service.delete(task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run(
        app,
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        timeout_graceful_shutdown=settings.SHUTDOWN_TIMEOUT_SECONDS,
    )
