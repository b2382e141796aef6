from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

import birthday_app.db as db
from birthday_app.config import load_settings
from birthday_app.db import init_db
from birthday_app.errors import InvalidTimezone, UserNotFound
from birthday_app.users import create_user, delete_user, get_user, list_users, update_user

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Same settings as the scheduler so both processes share one database.
    settings = load_settings()
    db.DB_PATH = settings.db_path
    init_db()
    logger.info("Using database %s", db.DB_PATH)
    yield


app = FastAPI(title="Birthday Notifier", lifespan=lifespan)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserCreate(CamelModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    birth_date: date
    timezone: str = Field(min_length=1, max_length=100)


class UserUpdate(CamelModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    birth_date: date | None = None
    timezone: str | None = Field(default=None, min_length=1, max_length=100)


@app.get("/health")
def health() -> dict:
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 3),
    }


@app.post("/user", status_code=201)
def create_user_route(payload: UserCreate) -> dict:
    try:
        user = create_user(payload.first_name, payload.last_name, payload.birth_date, payload.timezone)
    except InvalidTimezone as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "User created successfully", "user": user.to_json()}


@app.get("/user")
def list_users_route() -> dict:
    return {"users": [u.to_json() for u in list_users()]}


@app.get("/user/{user_id}")
def get_user_route(user_id: str) -> dict:
    try:
        return {"user": get_user(user_id).to_json()}
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/user/{user_id}")
def update_user_route(user_id: str, payload: UserUpdate) -> dict:
    try:
        user = update_user(
            user_id,
            first_name=payload.first_name,
            last_name=payload.last_name,
            birth_date=payload.birth_date,
            timezone_id=payload.timezone,
        )
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTimezone as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "User updated successfully", "user": user.to_json()}


@app.delete("/user/{user_id}")
def delete_user_route(user_id: str) -> dict:
    try:
        delete_user(user_id)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "User deleted successfully"}
