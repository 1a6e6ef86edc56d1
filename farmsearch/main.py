from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse

from .auth import AuthService
from .credentials import CredentialStore
from .errors import AuthError
from .profile import ProfileService
from .session import SessionState
from .settings import SettingsManager
from .storage import JsonFileStore

DATA_DIR = Path(os.environ.get("FARMSEARCH_DATA_DIR", "data"))

ERROR_STATUS: Dict[str, int] = {
    "INVALID_CREDENTIALS": status.HTTP_401_UNAUTHORIZED,
    "EMAIL_IN_USE": status.HTTP_409_CONFLICT,
    "INVALID_SIGNUP": status.HTTP_400_BAD_REQUEST,
    "HASHING_UNAVAILABLE": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _configure_logging(log_file: Path) -> logging.Logger:
    logger = logging.getLogger("farmsearch")
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False
    logger.debug("Logging initialised, writing to %s", log_file)
    return logger


@dataclass
class Services:
    settings: SettingsManager
    auth: AuthService
    profile: ProfileService


def build_services(data_dir: Path) -> Services:
    settings_manager = SettingsManager(data_dir / "settings.json")
    storage_cfg = settings_manager.section("storage")
    auth_cfg = settings_manager.section("auth")
    profile_cfg = settings_manager.section("profile")

    store = JsonFileStore(data_dir / "store")
    credentials = CredentialStore(
        store,
        storage_cfg["users_key"],
        settings_manager.settings.get("default_users", []),
    )
    session = SessionState(store, storage_cfg["session_key"])
    auth = AuthService(
        credentials,
        session,
        bcrypt_rounds=int(auth_cfg["bcrypt_rounds"]),
        min_password_length=int(auth_cfg["min_password_length"]),
        min_name_length=int(auth_cfg["min_name_length"]),
    )
    profile = ProfileService(
        store,
        session,
        prefix=storage_cfg["profile_prefix"],
        history_limit=int(profile_cfg["history_limit"]),
        tips_limit=int(profile_cfg["tips_limit"]),
        reminders_limit=int(profile_cfg["reminders_limit"]),
        default_tip_title=profile_cfg["default_tip_title"],
    )
    return Services(settings=settings_manager, auth=auth, profile=profile)


router = APIRouter(prefix="/api")
logger = logging.getLogger("farmsearch.api")


def _services(request: Request) -> Services:
    return request.app.state.services


async def _read_payload(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.debug("Ignoring malformed JSON body on %s", request.url.path)
        return {}
    return data if isinstance(data, dict) else {}


def _text(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    return value if isinstance(value, str) else ""


def _error_response(exc: AuthError) -> JSONResponse:
    return JSONResponse(
        {"ok": False, **exc.to_payload()},
        status_code=ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
    )


async def _profile_response(
    services: Services, operation: Optional[Callable[..., None]] = None, *args: Any
) -> JSONResponse:
    """Run a profile operation off the event loop and return the resulting state."""

    def run() -> Dict[str, Any]:
        if operation is not None:
            operation(*args)
        return services.profile.snapshot()

    return JSONResponse(await asyncio.to_thread(run))


@router.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@router.get("/session")
async def session_state(request: Request) -> JSONResponse:
    auth = _services(request).auth
    user = auth.current_user
    return JSONResponse(
        {
            "authenticated": auth.is_authenticated,
            "user": user.to_document() if user else None,
            "loading": auth.is_loading,
        }
    )


@router.post("/login")
async def login(request: Request) -> JSONResponse:
    payload = await _read_payload(request)
    auth = _services(request).auth
    try:
        user = await asyncio.to_thread(
            auth.login, _text(payload, "email"), _text(payload, "password")
        )
    except AuthError as exc:
        return _error_response(exc)
    return JSONResponse({"ok": True, "user": user.to_document()})


@router.post("/signup")
async def signup(request: Request) -> JSONResponse:
    payload = await _read_payload(request)
    confirm = payload.get("confirmPassword")
    auth = _services(request).auth
    try:
        user = await asyncio.to_thread(
            auth.signup,
            _text(payload, "name"),
            _text(payload, "email"),
            _text(payload, "password"),
            confirm if isinstance(confirm, str) else None,
        )
    except AuthError as exc:
        return _error_response(exc)
    return JSONResponse({"ok": True, "user": user.to_document()})


@router.post("/logout")
async def logout(request: Request) -> JSONResponse:
    # Waits on the auth lock while a login or signup is hashing.
    await asyncio.to_thread(_services(request).auth.logout)
    return JSONResponse({"ok": True})


@router.get("/profile")
async def get_profile(request: Request) -> JSONResponse:
    return await _profile_response(_services(request))


@router.post("/questions")
async def record_question(request: Request) -> JSONResponse:
    payload = await _read_payload(request)
    services = _services(request)
    return await _profile_response(
        services,
        services.profile.record_question,
        _text(payload, "prompt"),
        _text(payload, "answer"),
    )


@router.delete("/questions")
async def clear_questions(request: Request) -> JSONResponse:
    services = _services(request)
    return await _profile_response(services, services.profile.clear_questions)


@router.post("/tips")
async def save_tip(request: Request) -> JSONResponse:
    payload = await _read_payload(request)
    services = _services(request)
    return await _profile_response(
        services, services.profile.save_tip, _text(payload, "title"), _text(payload, "content")
    )


@router.delete("/tips/{tip_id}")
async def remove_tip(tip_id: str, request: Request) -> JSONResponse:
    services = _services(request)
    return await _profile_response(services, services.profile.remove_tip, tip_id)


@router.post("/tasks/{task_id}/toggle")
async def toggle_task(task_id: str, request: Request) -> JSONResponse:
    services = _services(request)
    return await _profile_response(services, services.profile.toggle_task, task_id)


@router.post("/reminders")
async def add_reminder(request: Request) -> JSONResponse:
    payload = await _read_payload(request)
    services = _services(request)
    return await _profile_response(
        services, services.profile.add_reminder, _text(payload, "message")
    )


@router.delete("/reminders/{reminder_id}")
async def remove_reminder(reminder_id: str, request: Request) -> JSONResponse:
    services = _services(request)
    return await _profile_response(services, services.profile.remove_reminder, reminder_id)


def create_app(data_dir: Path = DATA_DIR) -> FastAPI:
    data_dir.mkdir(parents=True, exist_ok=True)
    app_logger = _configure_logging(data_dir / "server.log")
    application = FastAPI(title="Farm Search")
    application.state.services = build_services(data_dir)
    application.include_router(router)
    app_logger.info("Application ready, data directory %s", data_dir)
    return application


app = create_app()

# Convenience include for uvicorn.
__all__ = ["app", "create_app"]
