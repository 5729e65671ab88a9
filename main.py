import logging
import uuid
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from admin_routes import register_admin_routes
from auth import build_user_directory, get_actor, get_api_key_actor, issue_token, public_user
from config import SETTINGS
from deploy_routes import register_deploy_routes
from models import Actor, LoginRequest, Role
from observability import get_request_id, log_event, request_id_ctx
from orchestrator import DeployOrchestrator
from policy import PolicyError, RateLimitExceeded
from rate_limit import RateLimitDecision, RateLimitSweeper, build_rate_limiters
from step_engine.executor import build_step_executor
from storage import build_environment_registry, build_history_store


logger = logging.getLogger("opsdeck.api")

rate_limiters = build_rate_limiters()
users = build_user_directory()
environments = build_environment_registry()
orchestrator = DeployOrchestrator(
    environments,
    build_step_executor(SETTINGS, request_id_provider=get_request_id),
    history_store=build_history_store(),
    display_limit=SETTINGS.history_display_limit,
    rollback_enabled=SETTINGS.rollback_enabled,
    auto_deploy=SETTINGS.auto_deploy,
    deploy_branch=SETTINGS.deploy_branch,
)
sweeper = RateLimitSweeper(rate_limiters, SETTINGS.rate_limit_sweep_seconds)

logger.info(
    "config.loaded app=%s environments=%s step_executor=%s rollback_enabled=%s auto_deploy=%s",
    SETTINGS.app_name,
    ",".join(environments.names()),
    orchestrator.executor.mode,
    SETTINGS.rollback_enabled,
    SETTINGS.auto_deploy,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    sweeper.start()
    try:
        yield
    finally:
        sweeper.stop()
        orchestrator.shutdown(wait=False)


app = FastAPI(title="Opsdeck API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(
    status_code: int,
    code: str,
    message: str,
    extra: Optional[dict] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    request_id = request_id_ctx.get() or str(uuid.uuid4())
    payload = {
        "code": code,
        "error_code": code,
        "error": HTTPStatus(status_code).phrase,
        "message": message,
        "request_id": request_id,
    }
    if extra:
        payload.update(extra)
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


def rate_limited_response(message: str, decision: RateLimitDecision) -> JSONResponse:
    return error_response(
        429,
        "RATE_LIMITED",
        message,
        extra={"retryAfter": decision.retry_after},
        headers=decision.headers(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_error_handler(request: Request, exc: RateLimitExceeded):
    return rate_limited_response(exc.message, exc.decision)


@app.exception_handler(PolicyError)
async def policy_error_handler(request: Request, exc: PolicyError):
    return error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return error_response(exc.status_code, exc.detail["code"], exc.detail.get("message", ""))
    return error_response(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(400, "INVALID_REQUEST", "Invalid request")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("request.failed method=%s path=%s", request.method, request.url.path)
    return error_response(500, "INTERNAL_ERROR", "Internal server error")


def client_key(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def enforce(name: str, key: str) -> None:
    decision = rate_limiters.check(name, key)
    if decision.admitted:
        return
    log_event("rate_limit_exceeded", level=logging.WARNING, limiter=name, key=key, retry_after=decision.retry_after)
    raise RateLimitExceeded(decision, rate_limiters[name].message)


@app.middleware("http")
async def apply_global_rate_limit(request: Request, call_next):
    if request.url.path == "/health":
        return await call_next(request)
    key = client_key(request)
    decision = rate_limiters.check("global", key)
    if not decision.admitted:
        log_event("rate_limit_exceeded", level=logging.WARNING, limiter="global", key=key, retry_after=decision.retry_after)
        return rate_limited_response(rate_limiters["global"].message, decision)
    response = await call_next(request)
    if response.status_code == 429:
        # an inner limiter rejected the request and already set its own headers
        return response
    for header, value in decision.headers().items():
        response.headers[header] = value
    return response


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


def require_role(actor: Actor, allowed: set[Role], action: str):
    if actor.role in allowed:
        return None
    return error_response(403, "ROLE_FORBIDDEN", f"Role {actor.role.value} cannot {action}")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/auth/login")
def login(req: LoginRequest, request: Request):
    key = client_key(request)
    enforce("login", key)
    user = users.authenticate(req.username, req.password)
    if user is None:
        log_event("login_failed", level=logging.WARNING, username=req.username, client=key)
        return error_response(401, "INVALID_CREDENTIALS", "Invalid username or password")
    rate_limiters["login"].release(key)
    token, expires_in = issue_token(user)
    log_event("login_succeeded", username=user["username"], role=user["role"].value)
    return {
        "message": "Login successful",
        "user": public_user(user),
        "tokens": {"accessToken": token, "expiresIn": expires_in},
    }


@app.get("/auth/me")
def whoami(authorization: Optional[str] = Header(None)):
    actor = get_actor(authorization)
    enforce("user", actor.actor_id)
    return {
        "user": {
            "id": actor.actor_id,
            "username": actor.username,
            "role": actor.role.value,
        }
    }


register_deploy_routes(
    app,
    get_orchestrator=lambda: orchestrator,
    get_actor=lambda authorization: get_actor(authorization),
    get_api_key_actor=lambda api_key: get_api_key_actor(api_key),
    enforce=lambda name, key: enforce(name, key),
    client_key=client_key,
    require_role=require_role,
)
register_admin_routes(
    app,
    get_actor=lambda authorization: get_actor(authorization),
    get_rate_limiters=lambda: rate_limiters,
    enforce=lambda name, key: enforce(name, key),
    require_role=require_role,
    error_response=error_response,
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
