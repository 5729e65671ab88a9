import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import HTTPException
from jwt.algorithms import RSAAlgorithm

from config import SETTINGS
from models import Actor, ROLE_RANK, Role

_JWKS_CACHE: Dict[str, Any] = {"url": None, "fetched_at": 0.0, "keys": {}}
_JWKS_TTL_SECONDS = 300
_LOCAL_ALGORITHM = "HS256"
PASSWORD_ITERATIONS = 260000
_DEMO_PASSWORD = "password123"
_EPHEMERAL_SECRET = secrets.token_urlsafe(32)

logger = logging.getLogger("opsdeck.auth")


def _auth_error(status_code: int, code: str, message: str) -> None:
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message})


def hash_password(password: str, salt: Optional[str] = None, iterations: int = PASSWORD_ITERATIONS) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt, expected = encoded.split("$", 3)
        rounds = int(iterations)
    except (AttributeError, ValueError):
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), rounds)
    return hmac.compare_digest(digest.hex(), expected)


class UserDirectory:
    """Static operator accounts, read once from ``OPS_USERS_PATH``.

    Each entry is ``{id, username, password_hash, role, enabled}``. In demo mode
    with no file the three built-in accounts are used instead.
    """

    def __init__(self, users_path: str = "", demo_mode: bool = False) -> None:
        self.users_path = users_path
        self.demo_mode = demo_mode
        self._users: Optional[Dict[str, dict]] = None
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, dict]:
        with self._lock:
            if self._users is None:
                users = self._read_file() if self.users_path else []
                if not users and self.demo_mode:
                    users = self._demo_users()
                self._users = {user["username"]: user for user in users}
            return self._users

    def _read_file(self) -> list[dict]:
        try:
            with open(self.users_path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            logger.warning("users file not found path=%s", self.users_path)
            return []
        except json.JSONDecodeError:
            logger.warning("users file invalid: not valid JSON path=%s", self.users_path)
            return []
        if not isinstance(data, list):
            logger.warning("users file invalid: root must be a list")
            return []
        users = []
        for entry in data:
            if not isinstance(entry, dict) or not entry.get("username") or not entry.get("password_hash"):
                logger.warning("users file entry skipped: username and password_hash required")
                continue
            try:
                role = Role(entry.get("role", Role.USER.value))
            except ValueError:
                logger.warning("users file entry skipped: unknown role username=%s", entry.get("username"))
                continue
            users.append(
                {
                    "id": str(entry.get("id") or entry["username"]),
                    "username": entry["username"],
                    "password_hash": entry["password_hash"],
                    "role": role,
                    "enabled": entry.get("enabled", True) is not False,
                }
            )
        return users

    def _demo_users(self) -> list[dict]:
        return [
            {
                "id": str(index),
                "username": role.value,
                "password_hash": hash_password(_DEMO_PASSWORD),
                "role": role,
                "enabled": True,
            }
            for index, role in enumerate((Role.ADMIN, Role.OPERATOR, Role.USER), start=1)
        ]

    def get(self, username: str) -> Optional[dict]:
        return self._load().get(username)

    def authenticate(self, username: str, password: str) -> Optional[dict]:
        user = self.get(username)
        if user is None or not user["enabled"]:
            return None
        if not verify_password(password, user["password_hash"]):
            return None
        return user


def public_user(user: dict) -> dict:
    return {"id": user["id"], "username": user["username"], "role": user["role"].value}


def _local_secret() -> str:
    if SETTINGS.jwt_secret:
        return SETTINGS.jwt_secret
    if SETTINGS.demo_mode:
        return _EPHEMERAL_SECRET
    _auth_error(500, "AUTH_CONFIG_MISSING", "OPS_JWT_SECRET is required")
    return ""


def issue_token(user: dict) -> tuple[str, int]:
    now = int(time.time())
    ttl = SETTINGS.jwt_ttl_seconds
    payload = {
        "sub": user["id"],
        "username": user["username"],
        SETTINGS.roles_claim: [user["role"].value],
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, _local_secret(), algorithm=_LOCAL_ALGORITHM), ttl


def _jwks_url() -> str:
    if SETTINGS.oidc_jwks_url:
        return SETTINGS.oidc_jwks_url
    if not SETTINGS.oidc_issuer:
        return ""
    issuer = SETTINGS.oidc_issuer.rstrip("/")
    return f"{issuer}/.well-known/jwks.json"


def _fetch_jwks(jwks_url: str) -> Dict[str, dict]:
    now = time.time()
    if _JWKS_CACHE["url"] == jwks_url and (now - _JWKS_CACHE["fetched_at"]) < _JWKS_TTL_SECONDS:
        return _JWKS_CACHE["keys"]
    response = requests.get(jwks_url, timeout=5)
    response.raise_for_status()
    payload = response.json()
    keys = {}
    for key in payload.get("keys", []):
        kid = key.get("kid")
        if kid:
            keys[kid] = key
    _JWKS_CACHE["url"] = jwks_url
    _JWKS_CACHE["fetched_at"] = now
    _JWKS_CACHE["keys"] = keys
    return keys


def _decode_local(token: str) -> dict:
    try:
        return jwt.decode(token, key=_local_secret(), algorithms=[_LOCAL_ALGORITHM])
    except jwt.ExpiredSignatureError:
        _auth_error(401, "UNAUTHORIZED", "Token expired")
    except jwt.InvalidTokenError:
        _auth_error(401, "UNAUTHORIZED", "Invalid token")
    return {}


def _decode_oidc(token: str, header: dict) -> dict:
    if not SETTINGS.oidc_issuer:
        _auth_error(500, "OIDC_CONFIG_MISSING", "OPS_OIDC_ISSUER is required")
    if not SETTINGS.oidc_audience:
        _auth_error(500, "OIDC_CONFIG_MISSING", "OPS_OIDC_AUDIENCE is required")
    jwks_url = _jwks_url()
    if not jwks_url:
        _auth_error(500, "OIDC_CONFIG_MISSING", "OPS_OIDC_JWKS_URL is required")
    kid = header.get("kid")
    if not kid:
        _auth_error(401, "UNAUTHORIZED", "Token is missing kid")
    try:
        keys = _fetch_jwks(jwks_url)
    except requests.RequestException as exc:
        logger.warning("auth.jwks fetch failed url=%s error=%s", jwks_url, exc)
        _auth_error(503, "AUTH_UNAVAILABLE", "Unable to fetch signing keys")
    jwk = keys.get(kid)
    if not jwk:
        _auth_error(401, "UNAUTHORIZED", "Unknown signing key")
    try:
        key = RSAAlgorithm.from_jwk(json.dumps(jwk))
        return jwt.decode(
            token,
            key=key,
            algorithms=["RS256"],
            audience=SETTINGS.oidc_audience,
            issuer=SETTINGS.oidc_issuer,
        )
    except jwt.ExpiredSignatureError:
        _auth_error(401, "UNAUTHORIZED", "Token expired")
    except jwt.InvalidTokenError:
        _auth_error(401, "UNAUTHORIZED", "Invalid token")
    return {}


def _decode_jwt(token: str) -> dict:
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError:
        _auth_error(401, "UNAUTHORIZED", "Invalid token header")
    if header.get("alg") == _LOCAL_ALGORITHM:
        return _decode_local(token)
    return _decode_oidc(token, header)


def _map_role(roles: list) -> Role:
    recognised = []
    for value in roles:
        try:
            recognised.append(Role(value))
        except ValueError:
            continue
    if not recognised:
        _auth_error(403, "AUTHZ_ROLE_REQUIRED", "No recognized role in token")
    return max(recognised, key=lambda role: ROLE_RANK[role])


def get_actor(authorization: Optional[str]) -> Actor:
    if not authorization:
        _auth_error(401, "UNAUTHORIZED", "Authorization header required")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        _auth_error(401, "UNAUTHORIZED", "Authorization must be Bearer token")
    token = parts[1].strip()
    if not token:
        _auth_error(401, "UNAUTHORIZED", "Authorization token missing")
    claims = _decode_jwt(token)
    roles_value = claims.get(SETTINGS.roles_claim, [])
    if isinstance(roles_value, str):
        roles_value = [roles_value]
    if not isinstance(roles_value, list):
        _auth_error(403, "AUTHZ_ROLE_REQUIRED", "Roles claim missing or invalid")
    role = _map_role(roles_value)
    actor_id = claims.get("sub") or claims.get("email") or "unknown"
    return Actor(actor_id=str(actor_id), role=role, username=claims.get("username") or claims.get("email"))


def get_api_key_actor(api_key: Optional[str]) -> Actor:
    if not api_key:
        _auth_error(401, "API_KEY_REQUIRED", "X-API-Key header required")
    matched = None
    for candidate in SETTINGS.api_keys:
        if hmac.compare_digest(candidate.encode("utf-8"), api_key.encode("utf-8")):
            matched = candidate
    if matched is None:
        _auth_error(401, "INVALID_API_KEY", "API key is invalid")
    # each key gets its own limiter bucket without the raw key reaching logs
    fingerprint = hashlib.sha256(matched.encode("utf-8")).hexdigest()[:12]
    return Actor(actor_id=f"api-key:{fingerprint}", role=Role.OPERATOR, username="api-key")


def build_user_directory() -> UserDirectory:
    return UserDirectory(SETTINGS.users_path, SETTINGS.demo_mode)
