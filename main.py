import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError as SchemaValidationError
from starlette.exceptions import HTTPException

from config import settings
from db import create_db_and_tables
from errors import LoanError
from routers import auth, institutions, items, orders, users
from routers.auth import OptionalUserRoleDep
from storage import image_store

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="LoanShelf")

app.mount(
    settings.STORAGE_URL,
    StaticFiles(directory=image_store.directory, check_dir=False),
    name="item-images",
)


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()


def _error_response(request: Request, status_code: int, message: str, headers=None) -> JSONResponse:
    # Reads answer like route handlers, writes like server actions
    if request.method == "GET":
        return JSONResponse({"error": message}, status_code=status_code, headers=headers)
    return JSONResponse(
        {"success": False, "message": message}, status_code=status_code, headers=headers
    )


def _join_errors(errors) -> str:
    messages = []
    for err in errors:
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{field}: {err['msg']}" if field else err["msg"])
    return ", ".join(messages) or "Invalid data format"


@app.exception_handler(LoanError)
async def loan_error_handler(request: Request, exc: LoanError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error_response(request, exc.status_code, exc.message)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return _error_response(request, exc.status_code, exc.detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _error_response(request, 400, _join_errors(exc.errors()))


@app.exception_handler(SchemaValidationError)
async def schema_validation_handler(request: Request, exc: SchemaValidationError):
    # Schemas built by hand from form/JSON payloads
    return _error_response(request, 400, _join_errors(exc.errors()))


@app.get("/")
def read_root(current: OptionalUserRoleDep):
    role = current["role"] if current else None
    dashboard = {"admin": "/api/admin", "user": "/api/user"}.get(role)
    return {"service": "LoanShelf", "role": role, "dashboard": dashboard}


app.include_router(auth.router)

app.include_router(institutions.router, prefix="/api/admin")
app.include_router(items.admin_router, prefix="/api/admin")
app.include_router(orders.admin_router, prefix="/api/admin")
app.include_router(users.admin_router, prefix="/api/admin")

app.include_router(items.user_router, prefix="/api/user")
app.include_router(orders.user_router, prefix="/api/user")
app.include_router(users.user_router, prefix="/api/user")
