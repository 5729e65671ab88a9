import re
from typing import Optional


BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9._/-]{1,120}$")
VERSION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]{0,63}$")


class PolicyError(Exception):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ValidationError(PolicyError):
    def __init__(self, message: str, code: str = "INVALID_REQUEST") -> None:
        super().__init__(400, code, message)


class ConflictError(PolicyError):
    def __init__(self, message: str = "Another deployment is currently running", code: str = "DEPLOYMENT_IN_PROGRESS") -> None:
        super().__init__(409, code, message)


class NotRunningError(PolicyError):
    def __init__(self, message: str = "No deployment is currently running") -> None:
        super().__init__(400, "NO_DEPLOYMENT_RUNNING", message)


class NotFoundError(PolicyError):
    def __init__(self, message: str) -> None:
        super().__init__(404, "NOT_FOUND", message)


class NoVersionError(PolicyError):
    def __init__(self, message: str = "No previous successful deployment found") -> None:
        super().__init__(400, "NO_ROLLBACK_VERSION", message)


class RollbackDisabledError(PolicyError):
    def __init__(self) -> None:
        super().__init__(403, "ROLLBACK_DISABLED", "Rollback feature is disabled in configuration")


class AutoDeployDisabledError(PolicyError):
    def __init__(self) -> None:
        super().__init__(403, "AUTO_DEPLOY_DISABLED", "Auto-deploy feature is disabled")


class RateLimitExceeded(PolicyError):
    def __init__(self, decision, message: str) -> None:
        super().__init__(429, "RATE_LIMITED", message)
        self.decision = decision

    @property
    def retry_after(self) -> int:
        return self.decision.retry_after


class Guardrails:
    def __init__(self, environments) -> None:
        self.environments = environments

    def validate_environment(self, environment: Optional[str]) -> str:
        if not environment:
            raise ValidationError("environment is required", "ENVIRONMENT_REQUIRED")
        if not self.environments.has(environment):
            available = ", ".join(self.environments.names())
            raise ValidationError(
                f"Environment {environment} not found (available: {available})",
                "INVALID_ENVIRONMENT",
            )
        return environment

    def validate_branch(self, branch: str) -> None:
        if not BRANCH_PATTERN.match(branch or ""):
            raise ValidationError("Branch name is invalid")

    def validate_version(self, version: Optional[str]) -> None:
        if version is None:
            return
        if not VERSION_PATTERN.match(version):
            raise ValidationError("Version format is invalid")
