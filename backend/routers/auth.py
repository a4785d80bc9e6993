import time
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session
from database.db import create_tables, verify_user_credentials

router = APIRouter()


class UserLogin(BaseModel):
    username: str
    password: str


@router.post("/auth/login")
def login(payload: UserLogin):
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        user = verify_user_credentials(username, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            user = verify_user_credentials(username, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    token, claims = issue_session_token(
        user["id"],
        role=user["role"],
        department=user["department"],
        section=user["section"],
        device_id=user["device_id"],
    )
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": {
            "id": user["id"],
            "full_name": user["full_name"],
            "username": user["username"],
            "role": user["role"],
            "department": user["department"],
            "section": user["section"],
            "roll_number": user["roll_number"],
        },
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "user_id": session["user_id"],
        "role": session["role"],
        "department": session["department"],
        "section": session["section"],
        "expires_at": session["exp"],
        "issued_at": session["iat"],
    }
