from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class Role(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"
    USER = "user"


ROLE_RANK = {Role.USER: 0, Role.OPERATOR: 1, Role.ADMIN: 2}


class DeploymentStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Actor(BaseModel):
    actor_id: str
    role: Role
    username: Optional[str] = None


class DeployStartRequest(BaseModel):
    environment: str = "development"
    branch: str = "main"
    version: Optional[str] = Field(None, max_length=64)
    rollback: bool = False


class RollbackRequest(BaseModel):
    environment: str
    version: Optional[str] = Field(None, max_length=64)


class WebhookPayload(BaseModel):
    ref: str
    repository: Optional[dict] = None
    pusher: Optional[dict] = None


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=120)
    password: str = Field(..., min_length=1, max_length=256)


class StepRecord(BaseModel):
    name: str
    description: str
    timestamp: str
    status: str


class LogEntry(BaseModel):
    timestamp: str
    message: str


class Deployment(BaseModel):
    id: str
    environment: str
    branch: str
    version: str
    status: DeploymentStatus
    rollback: bool = False
    webhook: bool = False
    steps: List[StepRecord] = []
    logs: List[LogEntry] = []
    startedAt: str
    endedAt: Optional[str] = None
    startedBy: str
    cancelledBy: Optional[str] = None
    error: Optional[str] = None


class EnvironmentState(BaseModel):
    status: str = "healthy"
    version: str = "1.0.0"
    lastDeploy: Optional[str] = None
    health: str = "healthy"
