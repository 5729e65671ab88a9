import os
from typing import Callable, Optional


RATE_LIMIT_DEFAULTS = {
    "global": (15 * 60, 100),
    "strict": (15 * 60, 5),
    "login": (15 * 60, 10),
    "user": (60, 30),
    "api_key": (60, 60),
    "deploy": (5 * 60, 3),
}


class Settings:
    def __init__(self) -> None:
        self.app_name = self._get("OPS_APP_NAME", "opsdeck", str)
        self.demo_mode = self._as_bool(self._get("OPS_DEMO_MODE", "true", str))
        cors = os.getenv("OPS_CORS_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")
        self.cors_origins = [o.strip() for o in cors.split(",") if o.strip()]

        self.environment_registry_path = os.getenv("OPS_ENVIRONMENT_REGISTRY_PATH", "./data/environments.json")
        self.history_path = os.getenv("OPS_HISTORY_PATH", "")
        self.history_display_limit = self._get("OPS_HISTORY_DISPLAY_LIMIT", 10, int)

        self.rollback_enabled = self._as_bool(self._get("OPS_ROLLBACK_ENABLED", "true", str))
        self.auto_deploy = self._as_bool(self._get("OPS_AUTO_DEPLOY", "false", str))
        self.deploy_branch = self._get("OPS_DEPLOY_BRANCH", "main", str)

        self.step_executor_mode = os.getenv("OPS_STEP_EXECUTOR_MODE", "simulated").strip().lower()
        self.step_delay_min_seconds = self._get("OPS_STEP_DELAY_MIN_SECONDS", 2.0, float)
        self.step_delay_max_seconds = self._get("OPS_STEP_DELAY_MAX_SECONDS", 5.0, float)
        self.step_failure_probability = self._get("OPS_STEP_FAILURE_PROBABILITY", 0.05, float)
        self.step_seed = self._get("OPS_STEP_SEED", None, int)
        self.engine_url = self._get("OPS_ENGINE_URL", "", str)
        self.engine_token = self._get("OPS_ENGINE_TOKEN", "", str)
        self.engine_timeout_seconds = self._get("OPS_ENGINE_TIMEOUT_SECONDS", 10.0, float)

        self.rate_limits: dict[str, tuple[int, int]] = {}
        for name, (window_seconds, max_count) in RATE_LIMIT_DEFAULTS.items():
            prefix = f"OPS_RATE_LIMIT_{name.upper()}"
            self.rate_limits[name] = (
                self._get(f"{prefix}_WINDOW_SECONDS", window_seconds, int),
                self._get(f"{prefix}_MAX", max_count, int),
            )
        self.rate_limit_sweep_seconds = self._get("OPS_RATE_LIMIT_SWEEP_SECONDS", 60, int)

        self.jwt_secret = self._get("OPS_JWT_SECRET", "", str)
        self.jwt_ttl_seconds = self._get("OPS_JWT_TTL_SECONDS", 24 * 60 * 60, int)
        self.oidc_issuer = self._get("OPS_OIDC_ISSUER", "", str)
        self.oidc_audience = self._get("OPS_OIDC_AUDIENCE", "", str)
        self.oidc_jwks_url = self._get("OPS_OIDC_JWKS_URL", "", str)
        self.roles_claim = self._get("OPS_ROLES_CLAIM", "roles", str)
        self.users_path = os.getenv("OPS_USERS_PATH", "")
        api_keys = os.getenv("OPS_API_KEYS", "")
        self.api_keys = [k.strip() for k in api_keys.split(",") if k.strip()]

    def _as_bool(self, value: object) -> bool:
        text = str(value or "").strip().lower()
        return text in {"1", "true", "yes", "on"}

    def _get(self, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        return default


SETTINGS = Settings()
