import logging
import os
import threading
import time

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError as PayloadValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from lab_lending.db.base import Base
from lab_lending.db.deps import get_db
from lab_lending.db.session import engine
from lab_lending.models import lending_models  # noqa: F401  registers the tables
from lab_lending.schemas.auth import LoginRequest, ProfileUpdateRequest, RegisterRequest, RoleUpdateRequest
from lab_lending.schemas.materials import MaterialUpsert
from lab_lending.schemas.requests import CreateLoanRequestDto, DecisionNotesRequest, RejectRequest, StatusUpdateRequest
from lab_lending.services.errors import (
    AuthenticationError,
    ConflictError,
    LendingError,
    NotFoundError,
    StoreError,
    UnavailableError,
    ValidationError,
)
from lab_lending.services.identity_service import get_session, login, logout, register, start_session, subscribe
from lab_lending.services.image_storage_service import UPLOADS_DIR, UPLOADS_URL_PREFIX, save_material_image
from lab_lending.services.inventory_service import delete_material, get_material, list_materials, upsert_material
from lab_lending.services.lifecycle import RequestStatus
from lab_lending.services.request_service import (
    create_request,
    delete_request,
    get_request,
    list_requests,
    list_requests_by_status,
    list_user_requests,
    set_request_status,
)
from lab_lending.services.user_profile_service import (
    ROLE_ADMIN,
    create_or_update_profile,
    ensure_profile,
    get_profile,
    set_role,
    sync_profile_on_login,
)

app = FastAPI(title="Lab Lending")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="lab_lending_session",
    same_site="lax",
    https_only=False,
)

LOG_LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
AUTH_LOGGER = logging.getLogger("lab_lending.auth")
AUTH_ATTEMPT_WINDOW_SECONDS = int(os.environ.get("AUTH_ATTEMPT_WINDOW_SECONDS") or "300")
AUTH_MAX_ATTEMPTS_PER_IP = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_IP") or "50")
AUTH_MAX_ATTEMPTS_PER_ACCOUNT = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_ACCOUNT") or "8")
AUTH_LOCKOUT_SECONDS = int(os.environ.get("AUTH_LOCKOUT_SECONDS") or "900")
_AUTH_GUARD_LOCK = threading.Lock()
_AUTH_ATTEMPTS_BY_IP: dict[str, list[float]] = {}
_AUTH_ATTEMPTS_BY_ACCOUNT: dict[str, list[float]] = {}
_AUTH_LOCKOUT_UNTIL_BY_ACCOUNT: dict[str, float] = {}

if _env_flag("LAB_LENDING_CREATE_SCHEMA", "true"):
    Base.metadata.create_all(bind=engine)

UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
app.mount(UPLOADS_URL_PREFIX, StaticFiles(directory=str(UPLOADS_DIR)), name="uploads")


def _log_auth_change(identity: dict | None) -> None:
    if identity:
        AUTH_LOGGER.info("Signed in uid=%s", identity.get("uid"))
    else:
        AUTH_LOGGER.info("Signed out")


subscribe(_log_auth_change)


def _status_code_for(exc: LendingError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, AuthenticationError):
        return 401
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (UnavailableError, ConflictError)):
        return 409
    if isinstance(exc, StoreError):
        return 503
    return 500


@app.exception_handler(LendingError)
async def handle_lending_error(request: Request, exc: LendingError):
    status_code = _status_code_for(exc)
    if status_code >= 500:
        logging.getLogger("lab_lending").error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_token = get_session(session_token)
    if session_from_token:
        request.session["user"] = dict(session_from_token, token=session_token)
        return session_from_token
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict):
        # The cookie keeps the token so a logout elsewhere still ends it.
        identity = get_session(session_from_cookie.get("token"))
        if identity:
            return identity
        request.session.pop("user", None)
    return None


def _require_session_or_401(request: Request, session_token: str | None) -> dict:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _is_admin(db: Session, session: dict) -> bool:
    profile = get_profile(db, session["uid"])
    return bool(profile and profile["role"] == ROLE_ADMIN)


def _require_admin_session_or_403(request: Request, session_token: str | None, db: Session) -> dict:
    session = _require_session_or_401(request, session_token)
    if not _is_admin(db, session):
        raise HTTPException(status_code=403, detail="Admin role required.")
    return session


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _prune_attempts(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def _check_login_guard(client_ip: str, account_key: str) -> int | None:
    """Return seconds to wait when this IP or account is throttled, else None."""
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        lockout_until = _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.get(account_key)
        if lockout_until and lockout_until > now_ts:
            return max(1, int(lockout_until - now_ts))
        if lockout_until:
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)

        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        _AUTH_ATTEMPTS_BY_IP[client_ip] = ip_attempts
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts

        if len(ip_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_IP, 1):
            return max(1, int((ip_attempts[0] + AUTH_ATTEMPT_WINDOW_SECONDS) - now_ts))
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)
            return max(AUTH_LOCKOUT_SECONDS, 1)
    return None


def _record_login_failure(client_ip: str, account_key: str) -> None:
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        ip_attempts.append(now_ts)
        account_attempts.append(now_ts)
        _AUTH_ATTEMPTS_BY_IP[client_ip] = ip_attempts
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)


def _record_login_success(account_key: str) -> None:
    with _AUTH_GUARD_LOCK:
        _AUTH_ATTEMPTS_BY_ACCOUNT.pop(account_key, None)
        _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)


def _signed_in_response(request: Request, identity: dict, token: str, profile: dict) -> dict:
    request.session["user"] = dict(identity, token=token)
    return {"sessionToken": token, "user": identity, "profile": profile}


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc.__class__.__name__}") from exc


@app.post("/api/auth/register")
def auth_register(payload: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    identity = register(db, payload.email, payload.password)
    profile = ensure_profile(db, identity["uid"], identity["email"], payload.name or "", payload.phone or "")
    token = start_session(identity)
    AUTH_LOGGER.info("Register success uid=%s role=%s", identity["uid"], profile["role"])
    return _signed_in_response(request, identity, token, profile)


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_db)):
    try:
        parsed = LoginRequest.model_validate(payload)
    except PayloadValidationError:
        raise HTTPException(status_code=400, detail="Invalid login request.")

    client_ip = _get_client_ip(request)
    account_key = f"email:{parsed.email.strip().lower()}"
    retry_after = _check_login_guard(client_ip, account_key)
    if retry_after is not None:
        AUTH_LOGGER.warning("Login throttled ip=%s key=%s retry_after=%s", client_ip, account_key, retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    try:
        identity, token = login(db, parsed.email, parsed.password)
    except AuthenticationError:
        _record_login_failure(client_ip, account_key)
        AUTH_LOGGER.warning("Login failed ip=%s key=%s", client_ip, account_key)
        raise
    _record_login_success(account_key)
    profile = sync_profile_on_login(db, identity)
    AUTH_LOGGER.info("Login success ip=%s uid=%s role=%s", client_ip, identity["uid"], profile["role"])
    return _signed_in_response(request, identity, token, profile)


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    cookie_user = request.session.get("user")
    request.session.clear()
    logout(x_session_token)
    if isinstance(cookie_user, dict) and cookie_user.get("token") != x_session_token:
        logout(cookie_user.get("token"))
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    session = _require_session_or_401(request, x_session_token)
    return {"user": session, "profile": get_profile(db, session["uid"])}


@app.put("/api/auth/me")
def update_my_profile(
    payload: ProfileUpdateRequest,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    session = _require_session_or_401(request, x_session_token)
    changes = payload.model_dump(exclude_unset=True)
    changes["email"] = session["email"]
    return {"user": session, "profile": create_or_update_profile(db, session["uid"], changes)}


@app.put("/api/admin/users/{user_id}/role")
def update_user_role(
    user_id: str,
    payload: RoleUpdateRequest,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    admin = _require_admin_session_or_403(request, x_session_token, db)
    profile = set_role(db, user_id, payload.role)
    AUTH_LOGGER.info("Role update by uid=%s target=%s role=%s", admin["uid"], user_id, payload.role)
    return profile


@app.get("/api/materials")
def get_materials(
    category: str | None = Query(None),
    q: str | None = Query(None),
    db: Session = Depends(get_db),
):
    return list_materials(db, category=category, search=q)


@app.get("/api/materials/{material_id}")
def get_material_item(material_id: str, db: Session = Depends(get_db)):
    material = get_material(db, material_id)
    if not material:
        raise HTTPException(status_code=404, detail="Material not found.")
    return material


@app.post("/api/materials")
def create_material(
    payload: MaterialUpsert,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    material_id = upsert_material(db, None, payload.model_dump(exclude_unset=True))
    return get_material(db, material_id)


@app.put("/api/materials/{material_id}")
def update_material(
    material_id: str,
    payload: MaterialUpsert,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    upsert_material(db, material_id, payload.model_dump(exclude_unset=True))
    return get_material(db, material_id)


@app.delete("/api/materials/{material_id}")
def remove_material(
    material_id: str,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    delete_material(db, material_id)
    return {"message": "Deleted"}


@app.post("/api/materials/upload-image")
def upload_material_image(
    request: Request,
    file: UploadFile = File(...),
    material_id: str | None = Form(None, alias="materialId"),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    url = save_material_image(material_id, file.filename, file.file.read(), file.content_type)
    return {"url": url}


@app.post("/api/requests")
def create_loan_request(
    payload: CreateLoanRequestDto,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    session = _require_session_or_401(request, x_session_token)
    profile = get_profile(db, session["uid"]) or {}
    data = payload.model_dump()
    data["userId"] = session["uid"]
    data["studentEmail"] = session.get("email") or ""
    data["studentName"] = payload.studentName or profile.get("displayName") or ""
    return create_request(db, data)


@app.get("/api/requests/mine")
def get_my_requests(
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    session = _require_session_or_401(request, x_session_token)
    return list_user_requests(db, session["uid"])


@app.get("/api/requests")
def get_requests(
    request: Request,
    status: str | None = Query(None),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    if status:
        return list_requests_by_status(db, status)
    return list_requests(db)


@app.get("/api/requests/{request_id}")
def get_loan_request(
    request_id: str,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    session = _require_session_or_401(request, x_session_token)
    loan = get_request(db, request_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Request not found.")
    if loan["userId"] != session["uid"] and not _is_admin(db, session):
        raise HTTPException(status_code=403, detail="You can only view your own requests.")
    return loan


@app.post("/api/requests/{request_id}/status")
def update_request_status(
    request_id: str,
    payload: StatusUpdateRequest,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    return set_request_status(db, request_id, payload.status, payload.adminNotes)


@app.post("/api/requests/{request_id}/approve")
def approve_request(
    request_id: str,
    request: Request,
    payload: DecisionNotesRequest | None = None,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    return set_request_status(db, request_id, RequestStatus.APPROVED, payload.notes if payload else None)


@app.post("/api/requests/{request_id}/reject")
def reject_request(
    request_id: str,
    payload: RejectRequest,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    reason = (payload.reason or "").strip()
    if not reason:
        raise HTTPException(status_code=400, detail="Reject reason is required.")
    return set_request_status(db, request_id, RequestStatus.REJECTED, reason)


@app.post("/api/requests/{request_id}/deliver")
def deliver_request(
    request_id: str,
    request: Request,
    payload: DecisionNotesRequest | None = None,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    return set_request_status(db, request_id, RequestStatus.DELIVERED, payload.notes if payload else None)


@app.post("/api/requests/{request_id}/return")
def return_request(
    request_id: str,
    request: Request,
    payload: DecisionNotesRequest | None = None,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    return set_request_status(db, request_id, RequestStatus.RETURNED, payload.notes if payload else None)


@app.delete("/api/requests/{request_id}")
def remove_request(
    request_id: str,
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_session_or_403(request, x_session_token, db)
    delete_request(db, request_id)
    return {"message": "Deleted"}


def main() -> None:
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    port = int(os.environ.get("PORT") or "8000")
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
