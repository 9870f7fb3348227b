import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from coordinator import ConsistencyCoordinator
from database import TASKS, USERS, Database, get_database
from errors import InternalError, InvalidQuery, ServiceError
from logging_setup import configure_logging, log_request
from query import QueryDescriptor, translate_query
from schemas import TaskPayload, UserPayload
from stores import TaskStore, UserStore

SERVICE_NAME = "tasktrack"


# -----------------------------
# Helpers
# -----------------------------
def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return {k: _plain(v) for k, v in d.items()}


def envelope(message: str, data: Any = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, "data": data})


def _parse_query(collection: str, request: Request) -> QueryDescriptor:
    descriptor = translate_query(collection, dict(request.query_params))
    if descriptor.invalid:
        logger.debug("Rejected {} query {}: {}", collection, dict(request.query_params), descriptor.errors)
        raise InvalidQuery()
    return descriptor


def _list(store, descriptor: QueryDescriptor) -> JSONResponse:
    if descriptor.is_count_request:
        return envelope("OK", store.count(descriptor.mongo_filter()))
    return envelope("OK", [serialize(d) for d in store.list(**descriptor.find_kwargs())])


def _first_error_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Validation error"
    first = errors[0]
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return f"{where}: {first.get('msg')}" if where else str(first.get("msg"))


# -----------------------------
# App factory
# -----------------------------
def create_app(database: Optional[Database] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    database = database or get_database()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if database.ping():
            database.ensure_indexes()
        else:
            logger.warning("MongoDB not reachable at startup, indexes not ensured")
        logger.info("{} API ready on database {}", SERVICE_NAME, database.db.name)
        yield
        database.close()

    app = FastAPI(title="Task Tracking API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    tasks = TaskStore(database.tasks)
    users = UserStore(database.users)
    coordinator = ConsistencyCoordinator(database, tasks, users)
    app.state.database = database
    app.state.coordinator = coordinator

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        started = time.perf_counter()
        status = InternalError.status_code
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            log_request(request.method, request.url.path, status, (time.perf_counter() - started) * 1000)

    # -----------------------------
    # Error handlers
    # -----------------------------
    @app.exception_handler(ServiceError)
    async def service_error(_request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("{}: {}", type(exc).__name__, exc.message)
        return envelope(exc.message, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(_request: Request, exc: RequestValidationError):
        return envelope(_first_error_message(exc), status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(_request: Request, exc: StarletteHTTPException):
        return envelope(str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
        return await service_error(request, InternalError())

    # -----------------------------
    # Health
    # -----------------------------
    @app.get("/")
    def read_root():
        return {"message": "Task Tracking API running"}

    @app.get("/api/health")
    def health():
        return envelope("OK", {"service": SERVICE_NAME, "status": "healthy"})

    # -----------------------------
    # Task endpoints
    # -----------------------------
    @app.get("/api/tasks")
    def list_tasks(request: Request):
        return _list(tasks, _parse_query(TASKS, request))

    @app.post("/api/tasks")
    def create_task(body: TaskPayload):
        task = coordinator.create_task(body.as_fields())
        return envelope("Created", serialize(task), status_code=201)

    @app.get("/api/tasks/{task_id}")
    def get_task(task_id: str, request: Request):
        descriptor = _parse_query(TASKS, request)
        return envelope("OK", serialize(tasks.get(task_id, descriptor.projection)))

    @app.put("/api/tasks/{task_id}")
    def update_task(task_id: str, body: TaskPayload):
        task = coordinator.update_task(task_id, body.as_fields())
        return envelope("OK", serialize(task))

    @app.delete("/api/tasks/{task_id}")
    def delete_task(task_id: str):
        coordinator.delete_task(task_id)
        return Response(status_code=204)

    # -----------------------------
    # User endpoints
    # -----------------------------
    @app.get("/api/users")
    def list_users(request: Request):
        return _list(users, _parse_query(USERS, request))

    @app.post("/api/users")
    def create_user(body: UserPayload):
        user = coordinator.create_user(body.as_fields())
        return envelope("Created", serialize(user), status_code=201)

    @app.get("/api/users/{user_id}")
    def get_user(user_id: str, request: Request):
        descriptor = _parse_query(USERS, request)
        return envelope("OK", serialize(users.get(user_id, descriptor.projection)))

    @app.put("/api/users/{user_id}")
    def update_user(user_id: str, body: UserPayload):
        user = coordinator.update_user(user_id, body.as_fields())
        return envelope("OK", serialize(user))

    @app.delete("/api/users/{user_id}")
    def delete_user(user_id: str):
        coordinator.delete_user(user_id)
        return Response(status_code=204)

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=settings.port, access_log=False)


if __name__ == "__main__":
    run()
