# app.py — Framework Pro tracking API
# - xAPI statements with best-effort LRS forwarding
# - SCORM runtime data model + API wrapper script
# - module completion / quiz attempts emit statements

import logging
import os, json, hashlib, hmac, secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

import requests
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError

import db
from cache import CacheKeys, ResponseCache
from env_validation import get_env_float, get_env_int
from retry_policy import RetryableResult, RetryPolicy
from schemas import (
    LrsConfiguration,
    ModuleCompletionBody,
    QuizAttemptBody,
    ScormDataBody,
    ScormRuntimeBody,
    TrackingData,
    XapiStatementRecord,
    dump_json_field,
)
from scorm import ScormService
from xapi import (
    OBJECT_ACTIVITY_TYPES,
    ActivityType,
    Actor,
    NewStatement,
    ObjectInfo,
    XApiService,
    expand_client_context,
    verbs_table,
)

logger = logging.getLogger(__name__)


def _build_xapi_service(lrs_config: Optional[LrsConfiguration]) -> XApiService:
    timeout = get_env_float("LRS_TIMEOUT", 10.0)
    policy = RetryPolicy(
        max_attempts=max(1, get_env_int("LRS_MAX_ATTEMPTS", 1)),
        base_delay=0.5,
        timeout=timeout,
        exceptions=(requests.RequestException, RetryableResult),
    )
    return XApiService(lrs_config, retry_policy=policy, timeout=timeout)


def _load_lrs_configuration() -> Optional[LrsConfiguration]:
    """Environment configuration wins; otherwise the active stored row is used."""
    config = LrsConfiguration.from_env()
    if config is not None:
        return config
    row = db.get_active_lrs_configuration()
    if not row:
        return None
    return LrsConfiguration(
        endpoint=row["endpoint"],
        username=row["username"],
        password=row["password"],
        is_active=bool(row["is_active"]),
    )


_XAPI_SERVICE = _build_xapi_service(None)
SCORM_SERVICE = ScormService()
CACHE = ResponseCache(ttl=get_env_int("CACHE_TTL_SECONDS", 3600))


def xapi_service() -> XApiService:
    return _XAPI_SERVICE


def configure_lrs(config: Optional[LrsConfiguration]) -> XApiService:
    """Swap the LRS configuration injected into the xAPI service."""
    global _XAPI_SERVICE
    _XAPI_SERVICE = _XAPI_SERVICE.with_configuration(config)
    if config is None:
        logger.info("xAPI statements will be stored locally only (no LRS configured)")
    else:
        logger.info("xAPI statements will be forwarded to %s", config.endpoint)
    return _XAPI_SERVICE


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()
        logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

        db.init()
        configure_lrs(_load_lrs_configuration())
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Framework Pro Tracking API", version="1.0.0", lifespan=_lifespan)

TOKENS: Dict[str, str] = {}

_PUBLIC_API_PATHS = frozenset({"/api/scorm/api-wrapper.js"})

_PBKDF2_ITERATIONS = 150_000
_PBKDF2_DIGEST = "sha256"


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None


def _authenticate_request(request: Request) -> Optional[str]:
    header_token = _extract_token(request.headers.get("authorization"))
    if header_token and header_token in TOKENS:
        return TOKENS[header_token]
    alt_header = request.headers.get("x-token")
    if alt_header and alt_header in TOKENS:
        return TOKENS[alt_header]
    query_token = request.query_params.get("token")
    if query_token and query_token in TOKENS:
        return TOKENS[query_token]
    return None


@app.middleware("http")
async def _enforce_token(request: Request, call_next):
    normalized_path = _normalize_path(request.url.path)
    if normalized_path.startswith("/api/") and normalized_path not in _PUBLIC_API_PATHS:
        user_id = _authenticate_request(request)
        if not user_id:
            return Response(
                status_code=401,
                content=json.dumps({"detail": "missing or invalid token"}),
                media_type="application/json",
            )
        request.state.user_id = user_id
    return await call_next(request)


# ---------- Helpers ----------
def _generate_salt() -> str:
    return secrets.token_bytes(16).hex()


def _pbkdf2_hash(password: str, salt_hex: str) -> str:
    try:
        salt_bytes = bytes.fromhex(salt_hex)
    except ValueError:
        raise ValueError("Invalid salt for password hashing") from None
    return hashlib.pbkdf2_hmac(
        _PBKDF2_DIGEST,
        password.encode("utf-8"),
        salt_bytes,
        _PBKDF2_ITERATIONS,
    ).hex()


def _hash_password(password: str) -> tuple[str, str]:
    salt_hex = _generate_salt()
    return _pbkdf2_hash(password, salt_hex), salt_hex


def _verify_password(
    password: str,
    stored_hash: str,
    stored_salt: Optional[str],
) -> tuple[bool, Optional[tuple[str, str]]]:
    if stored_salt:
        try:
            derived = _pbkdf2_hash(password, stored_salt)
        except ValueError:
            return False, None
        return hmac.compare_digest(stored_hash or "", derived), None

    legacy_salt = os.getenv("AUTH_SALT", "local_salt")
    legacy_hash = hmac.new(
        legacy_salt.encode("utf-8"),
        password.encode("utf-8"),
        digestmod="sha256",
    ).hexdigest()
    if not hmac.compare_digest(stored_hash or "", legacy_hash):
        return False, None
    return True, _hash_password(password)


def _current_user(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="missing or invalid token")
    return user_id


def _actor_for(user: Dict[str, Any]) -> Actor:
    user_id = user["user_id"]
    return Actor(
        name=user.get("name") or user_id,
        email=user.get("email") or f"{user_id}@questionpro.ai",
    )


def _validation_detail(message: str, exc: ValidationError) -> Dict[str, Any]:
    return {"message": message, "errors": exc.errors(include_url=False, include_context=False)}


def _resolve_object_info(object_type: str, object_id: int, fallback_name: str) -> ObjectInfo:
    """Describe the tracked object from the catalogue, or generically when it is unknown."""
    if object_type == "module":
        module = db.get_module(object_id)
        if module:
            framework = db.get_framework(module["framework_id"])
            return ObjectInfo(
                name=module["name"],
                description=f"Module in {(framework or {}).get('name', '')} framework",
                type=ActivityType.MODULE,
            )
    elif object_type == "framework":
        framework = db.get_framework(object_id)
        if framework:
            return ObjectInfo(
                name=framework["name"],
                description=framework.get("description"),
                type=ActivityType.COURSE,
            )
    elif object_type == "quiz":
        quiz = db.get_quiz(object_id)
        if quiz:
            return ObjectInfo(
                name=quiz["title"],
                description=quiz.get("description"),
                type=ActivityType.ASSESSMENT,
            )
    return ObjectInfo(name=fallback_name, type=ActivityType.ACTIVITY)


def _resolve_for_resend(record: XapiStatementRecord) -> Optional[Tuple[Actor, ObjectInfo]]:
    user = db.get_user(record.user_id)
    if not user:
        return None
    info = _resolve_object_info(record.object_type, record.object_id, record.object)
    if info.type == ActivityType.ACTIVITY:
        info = ObjectInfo(name=record.object, type=OBJECT_ACTIVITY_TYPES[record.object_type])
    return _actor_for(user), info


def _refresh_progress(user_id: str, framework_id: int) -> Tuple[int, int, str]:
    completed, total = db.count_module_completions(user_id, framework_id)
    if total and completed == total:
        status = "completed"
    elif completed > 0:
        status = "in_progress"
    else:
        status = "not_started"
    db.upsert_user_progress(user_id, framework_id, status, completed, total)
    CACHE.invalidate(CacheKeys.user_progress(user_id))
    return completed, total, status


# ---------- Request bodies ----------
class RegisterBody(BaseModel):
    user_id: str
    password: str
    email: Optional[str] = None
    name: Optional[str] = None


class LoginBody(BaseModel):
    user_id: str
    password: str


# ---------- Auth ----------
@app.post("/auth/register")
def auth_register(body: RegisterBody):
    if db.get_user_auth(body.user_id):
        raise HTTPException(status_code=400, detail="user_id exists")
    email = (body.email or "").strip() or None
    if email and db.get_user_by_email(email):
        raise HTTPException(status_code=400, detail="email exists")
    pw_hash, pw_salt = _hash_password(body.password)
    db.create_user(body.user_id, email, pw_hash, pw_salt, name=(body.name or "").strip() or None)
    return {"ok": True}

@app.post("/auth/login")
def auth_login(body: LoginBody):
    row = db.get_user_auth(body.user_id)
    if not row:
        raise HTTPException(status_code=401, detail="invalid credentials")

    valid, upgrade = _verify_password(body.password, row["pw_hash"], row["pw_salt"])
    if not valid:
        raise HTTPException(status_code=401, detail="invalid credentials")
    if upgrade:
        db.update_user_password(body.user_id, upgrade[0], upgrade[1])
    token = secrets.token_urlsafe(24)
    TOKENS[token] = body.user_id
    return {"token": token, "user_id": body.user_id}


# ---------- xAPI ----------
@app.post("/api/xapi/statements", status_code=201)
def create_xapi_statement(request: Request, payload: Dict[str, Any] = Body(...)):
    user_id = _current_user(request)
    try:
        data = TrackingData.model_validate(payload)
    except ValidationError as exc:
        return JSONResponse(status_code=400, content=_validation_detail("Invalid xAPI statement", exc))

    user = db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    service = xapi_service()
    context = expand_client_context(service, data.context)
    record = service.create_statement(
        NewStatement(
            user_id=user_id,
            verb=data.verb,
            object=data.object,
            object_type=data.object_type,
            object_id=data.object_id,
            result=dump_json_field(data.result),
            context=dump_json_field(context),
        ),
        _actor_for(user),
        _resolve_object_info(data.object_type, data.object_id, data.object),
    )
    if record is None:
        raise HTTPException(status_code=500, detail="Failed to create xAPI statement")
    return record.model_dump(mode="json")


@app.get("/api/xapi/statements")
def list_xapi_statements(request: Request, limit: int = 100, object_type: Optional[str] = None):
    user_id = _current_user(request)
    if object_type and object_type not in OBJECT_ACTIVITY_TYPES:
        raise HTTPException(status_code=400, detail=f"Unsupported object_type: {object_type}")
    limit = max(1, min(int(limit), 500))
    records = xapi_service().list_statements(user_id, limit=limit, object_type=object_type)
    return [record.model_dump(mode="json") for record in records]


@app.get("/api/xapi/verbs")
def list_xapi_verbs():
    return verbs_table()


@app.post("/api/xapi/statements/resend")
def resend_xapi_statements(request: Request, limit: int = 100):
    _current_user(request)
    service = xapi_service()
    if service.lrs_config is None:
        raise HTTPException(status_code=409, detail="No LRS configured")
    delivered = service.resend_unstored(_resolve_for_resend, limit=max(1, min(int(limit), 1000)))
    return {"delivered": delivered}


# ---------- LRS configuration ----------
@app.post("/api/lrs/config", status_code=201)
def save_lrs_config(request: Request, payload: Dict[str, Any] = Body(...)):
    _current_user(request)
    try:
        config = LrsConfiguration.model_validate(payload)
    except ValidationError as exc:
        return JSONResponse(status_code=400, content=_validation_detail("Invalid LRS configuration", exc))

    db.save_lrs_configuration(config.endpoint, config.username, config.password, activate=config.is_active)
    configure_lrs(config if config.is_active else _load_lrs_configuration())
    return config.masked()


@app.get("/api/lrs/config")
def get_lrs_config(request: Request):
    _current_user(request)
    config = xapi_service().lrs_config
    if config is None:
        raise HTTPException(status_code=404, detail="No LRS configured")
    return config.masked()


# ---------- SCORM ----------
@app.post("/api/scorm/data", status_code=201)
def store_scorm_data(request: Request, payload: Dict[str, Any] = Body(...)):
    user_id = _current_user(request)
    try:
        data = ScormDataBody.model_validate(payload)
    except ValidationError as exc:
        return JSONResponse(status_code=400, content=_validation_detail("Missing required fields", exc))

    record = SCORM_SERVICE.store_scorm_data(user_id, data.sco_id, data.element_name, data.element_value)
    if record is None:
        raise HTTPException(status_code=500, detail="Failed to store SCORM data")
    CACHE.invalidate(CacheKeys.scorm_lms_data(user_id, data.sco_id))
    return record.model_dump(mode="json")


@app.get("/api/scorm/data/{sco_id}")
def get_scorm_data(sco_id: str, request: Request):
    user_id = _current_user(request)
    return CACHE.get_or_set(
        CacheKeys.scorm_lms_data(user_id, sco_id),
        lambda: SCORM_SERVICE.get_lms_data(user_id, sco_id),
    )


@app.get("/api/scorm/data/{sco_id}/history")
def get_scorm_history(sco_id: str, request: Request):
    user_id = _current_user(request)
    rows = SCORM_SERVICE.get_scorm_data_by_sco(user_id, sco_id)
    return {
        "rows": [row.model_dump(mode="json") for row in rows],
        "lms": SCORM_SERVICE.transform_scorm_data_to_lms(rows),
    }


@app.get("/api/scorm/data/{sco_id}/elements/{element_name}")
def get_scorm_element(sco_id: str, element_name: str, request: Request):
    user_id = _current_user(request)
    record = SCORM_SERVICE.get_scorm_data_by_element(user_id, sco_id, element_name)
    if record is None:
        raise HTTPException(status_code=404, detail="SCORM element not found")
    return record.model_dump(mode="json")


@app.get("/api/scorm/status/{sco_id}")
def get_scorm_status(sco_id: str, request: Request):
    user_id = _current_user(request)
    return SCORM_SERVICE.status_summary(SCORM_SERVICE.get_lms_data(user_id, sco_id))


@app.post("/api/scorm/runtime")
def scorm_runtime(request: Request, payload: Dict[str, Any] = Body(...)):
    user_id = _current_user(request)
    try:
        body = ScormRuntimeBody.model_validate(payload)
    except ValidationError as exc:
        return JSONResponse(status_code=400, content=_validation_detail("Invalid SCORM runtime request", exc))
    try:
        outcome = SCORM_SERVICE.handle_runtime_action(user_id, body.sco_id, body.action, body.params)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    if outcome.get("stored"):
        CACHE.invalidate(CacheKeys.scorm_lms_data(user_id, body.sco_id))
    return outcome


@app.get("/api/scorm/api-wrapper.js")
def scorm_api_wrapper(request: Request, version: str = "scorm2004", sco_id: str = ""):
    api_endpoint = f"{str(request.base_url).rstrip('/')}/api/scorm/runtime"
    try:
        script = SCORM_SERVICE.get_scorm_api_wrapper_script(version, api_endpoint, sco_id=sco_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(content=script, media_type="application/javascript")


# ---------- Modules ----------
@app.get("/api/modules/{module_id}")
def get_module(module_id: int, request: Request):
    user_id = _current_user(request)
    module = CACHE.get_or_set(CacheKeys.module(module_id), lambda: db.get_module(module_id))
    if not module:
        raise HTTPException(status_code=404, detail="Module not found")
    return dict(module, completed=db.is_module_completed(user_id, module_id))


def _apply_module_completion(module_id: int, user_id: str, payload: Dict[str, Any]) -> Tuple[Dict[str, Any], int, int]:
    try:
        body = ModuleCompletionBody.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Completed status is required") from exc

    module = db.get_module(module_id)
    if not module:
        raise HTTPException(status_code=404, detail="Module not found")

    db.set_module_completed(user_id, module_id, body.completed)
    CACHE.invalidate_many([CacheKeys.module(module_id), CacheKeys.framework_modules(module["framework_id"])])
    completed, total, status = _refresh_progress(user_id, module["framework_id"])
    updated = dict(
        module,
        completed=body.completed,
        progress={"status": status, "completed_modules": completed, "total_modules": total},
    )
    return updated, completed, total


@app.patch("/api/modules/{module_id}/complete")
@app.patch("/api/modules/{module_id}/complete-with-tracking")
def complete_module_with_tracking(module_id: int, request: Request, payload: Dict[str, Any] = Body(...)):
    user_id = _current_user(request)
    updated, completed, total = _apply_module_completion(module_id, user_id, payload)
    if not updated["completed"]:
        return updated

    try:
        user = db.get_user(user_id)
        framework = db.get_framework(updated["framework_id"])
        if user and framework:
            actor = _actor_for(user)
            service = xapi_service()
            service.track_module_completion(
                user_id, module_id, updated["name"], framework["id"], framework["name"], actor
            )
            if total and completed == total:
                service.track_framework_completion(
                    user_id, framework["id"], framework["name"], completed, total, actor
                )
    except Exception:
        # Tracking never fails the completion itself
        logger.exception("xAPI tracking error for module %s", module_id)
    return updated


@app.patch("/api/modules/{module_id}")
def update_module_completion(module_id: int, request: Request, payload: Dict[str, Any] = Body(...)):
    user_id = _current_user(request)
    updated, _, _ = _apply_module_completion(module_id, user_id, payload)
    return updated


# ---------- Quizzes ----------
@app.post("/api/quiz-attempts", status_code=201)
def create_quiz_attempt(request: Request, payload: Dict[str, Any] = Body(...)):
    user_id = _current_user(request)
    try:
        body = QuizAttemptBody.model_validate(payload)
    except ValidationError as exc:
        return JSONResponse(status_code=400, content=_validation_detail("Invalid quiz attempt", exc))

    quiz = db.get_quiz(body.quiz_id)
    if not quiz:
        raise HTTPException(status_code=404, detail="Quiz not found")

    passed = body.passed
    if passed is None:
        passed = body.score / body.max_score >= float(quiz.get("passing_score") or 0.0)

    attempt = db.record_quiz_attempt(
        user_id, body.quiz_id, body.score, body.max_score, passed, body.time_taken, body.answers
    )
    CACHE.invalidate(CacheKeys.user_quiz_attempts(user_id))

    try:
        user = db.get_user(user_id)
        framework = db.get_framework(quiz["framework_id"])
        if user and framework:
            xapi_service().track_quiz_attempt(
                user_id,
                quiz["id"],
                quiz["title"],
                framework["id"],
                framework["name"],
                body.score,
                body.max_score,
                passed,
                body.time_taken,
                _actor_for(user),
            )
    except Exception:
        logger.exception("xAPI tracking error for quiz %s", body.quiz_id)
    return attempt


# ---------- Progress ----------
@app.get("/api/user/progress")
def get_user_progress(request: Request):
    user_id = _current_user(request)
    return CACHE.get_or_set(CacheKeys.user_progress(user_id), lambda: db.list_user_progress(user_id))
