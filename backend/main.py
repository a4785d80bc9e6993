import logging
import sqlite3
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.errors import AttendanceError, StoreUnavailable
from backend.routers import attendance, auth, core, routines, sessions
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    create_tables()
    yield


app = FastAPI(title="ClassCheck API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(AttendanceError)
async def attendance_error_handler(_request: Request, exc: AttendanceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(sqlite3.OperationalError)
async def store_error_handler(request: Request, exc: sqlite3.OperationalError):
    logger.exception("Store failure on %s %s", request.method, request.url.path)
    error = StoreUnavailable()
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(sessions.router)
app.include_router(attendance.router)
app.include_router(routines.router)
