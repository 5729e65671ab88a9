import contextvars
import logging
import random
import string
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from datetime import datetime, timezone
from typing import Callable, Optional

from deploy_state import (
    DEPLOY_STEPS,
    is_terminal,
    latest_success_by_environment,
    rollback_target_version,
    step_status,
)
from models import Deployment, DeploymentStatus, EnvironmentState, LogEntry, StepRecord
from observability import deployment_id_ctx, log_event
from policy import (
    AutoDeployDisabledError,
    ConflictError,
    Guardrails,
    NoVersionError,
    NotFoundError,
    NotRunningError,
    RollbackDisabledError,
    ValidationError,
)
from step_engine.executor import CancellationToken, StepExecutor, StepFailed
from storage import EnvironmentRegistry, HistoryStore, isoformat


_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_deploy_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=5))
    return f"deploy-{int(time.time() * 1000)}-{suffix}"


def generate_version(now: datetime) -> str:
    return now.strftime("%Y.%m.%d-%H%M")


class DeployOrchestrator:
    """Owns the active-run slot, the deploy history and the environment table.

    Every read or write of that state happens under ``self._lock``. Accepted runs
    execute on a single background worker; callers get the record back as soon
    as the run is registered. Cancellation is cooperative: the worker checks the
    run's token between steps and an in-flight step always finishes. Steps that
    already ran are not undone.
    """

    def __init__(
        self,
        environments: EnvironmentRegistry,
        executor: StepExecutor,
        history_store: Optional[HistoryStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Callable[[], str] = generate_deploy_id,
        display_limit: int = 10,
        rollback_enabled: bool = True,
        auto_deploy: bool = False,
        deploy_branch: str = "main",
        auto_deploy_environment: str = "development",
    ) -> None:
        self.environments = environments
        self.guardrails = Guardrails(environments)
        self.executor = executor
        self.history_store = history_store
        self.display_limit = display_limit
        self.rollback_enabled = rollback_enabled
        self.auto_deploy = auto_deploy
        self.deploy_branch = deploy_branch
        self.auto_deploy_environment = auto_deploy_environment
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._current: Optional[Deployment] = None
        self._token: Optional[CancellationToken] = None
        self._history: list[Deployment] = []
        self._states: dict[str, EnvironmentState] = environments.initial_states()
        self._futures: dict[str, Future] = {}
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="deploy-worker")
        self._logger = logging.getLogger("opsdeck.deploy")
        if history_store is not None:
            self._restore(history_store.load())

    def _now(self) -> str:
        return isoformat(self._clock())

    def _restore(self, deployments: list[Deployment]) -> None:
        finished = [deployment for deployment in deployments if is_terminal(deployment.status)]
        self._history.extend(finished)
        for environment, deployment in latest_success_by_environment(finished).items():
            state = self._states.get(environment)
            if state is None:
                continue
            state.version = deployment.version
            state.lastDeploy = deployment.endedAt
            state.status = "healthy"
        if finished:
            self._logger.info("deploy.history restored count=%s", len(finished))

    def start(
        self,
        environment: str,
        branch: str = "main",
        version: Optional[str] = None,
        rollback: bool = False,
        initiator: str = "system",
        webhook: bool = False,
    ) -> Deployment:
        self.guardrails.validate_environment(environment)
        self.guardrails.validate_branch(branch)
        self.guardrails.validate_version(version)
        with self._lock:
            if self._current is not None:
                raise ConflictError()
            deployment = self._accept_locked(environment, branch, version, rollback, initiator, webhook)
            accepted = deployment.model_copy(deep=True)
        log_event(
            "rollback_started" if rollback else "deploy_started",
            deployment_id=accepted.id,
            environment=environment,
            branch=branch,
            version=accepted.version,
            actor_id=initiator,
            webhook=webhook or None,
        )
        return accepted

    def _accept_locked(
        self,
        environment: str,
        branch: str,
        version: Optional[str],
        rollback: bool,
        initiator: str,
        webhook: bool,
    ) -> Deployment:
        now = self._clock()
        deployment = Deployment(
            id=self._id_factory(),
            environment=environment,
            branch=branch,
            version=version or generate_version(now),
            status=DeploymentStatus.RUNNING,
            rollback=rollback,
            webhook=webhook,
            startedAt=isoformat(now),
            startedBy=initiator,
        )
        token = CancellationToken()
        self._current = deployment
        self._token = token
        self._history.append(deployment)
        context = contextvars.copy_context()
        context.run(deployment_id_ctx.set, deployment.id)
        try:
            self._futures[deployment.id] = self._pool.submit(context.run, self._execute, deployment, token)
        except RuntimeError:
            self._history.pop()
            self._current = None
            self._token = None
            raise
        self._logger.info(
            "deployment.created deployment_id=%s environment=%s branch=%s version=%s rollback=%s",
            deployment.id,
            environment,
            branch,
            deployment.version,
            rollback,
        )
        return deployment

    def rollback(self, environment: str, version: Optional[str] = None, initiator: str = "system") -> Deployment:
        if not self.rollback_enabled:
            raise RollbackDisabledError()
        self.guardrails.validate_environment(environment)
        self.guardrails.validate_version(version)
        with self._lock:
            if self._current is not None:
                raise ConflictError("Cannot rollback while deployment is running")
            target = version or rollback_target_version(self._history, environment)
            if not target:
                raise NoVersionError()
            deployment = self._accept_locked(environment, "rollback", target, True, initiator, False)
            accepted = deployment.model_copy(deep=True)
        log_event(
            "rollback_started",
            deployment_id=accepted.id,
            environment=environment,
            version=target,
            actor_id=initiator,
        )
        return accepted

    def cancel(self, cancelled_by: str = "system") -> Deployment:
        with self._lock:
            deployment = self._current
            if deployment is None or deployment.status != DeploymentStatus.RUNNING:
                raise NotRunningError()
            self._append_log_locked(deployment, f"Deploy cancelled by {cancelled_by}")
            deployment.status = DeploymentStatus.CANCELLED
            deployment.endedAt = self._now()
            deployment.cancelledBy = cancelled_by
            if self._token is not None:
                self._token.cancel()
            self._release_locked(deployment)
            cancelled = deployment.model_copy(deep=True)
        log_event(
            "deploy_cancelled",
            deployment_id=cancelled.id,
            environment=cancelled.environment,
            actor_id=cancelled_by,
        )
        self._persist()
        return cancelled

    def webhook(self, ref: str, repository: Optional[dict] = None, pusher: Optional[dict] = None) -> dict:
        if not self.auto_deploy:
            raise AutoDeployDisabledError()
        log_event(
            "webhook_received",
            ref=ref,
            repository=(repository or {}).get("name"),
            pusher=(pusher or {}).get("name"),
        )
        if ref != f"refs/heads/{self.deploy_branch}":
            return {"message": "Branch ignored", "branch": ref}
        deployment = self.start(
            self.auto_deploy_environment,
            branch=self.deploy_branch,
            initiator="webhook",
            webhook=True,
        )
        return {"message": "Auto-deploy triggered", "deployId": deployment.id}

    def _execute(self, deployment: Deployment, token: CancellationToken) -> None:
        context = {
            "deploymentId": deployment.id,
            "environment": deployment.environment,
            "branch": deployment.branch,
            "version": deployment.version,
            "rollback": deployment.rollback,
        }
        try:
            self._add_step(deployment, "started", "Deploy started")
            for name, description in DEPLOY_STEPS:
                if token.cancelled:
                    break
                self._add_step(deployment, name, description)
                self.executor.run_step(name, context, token)
                self._add_log(deployment, f"{description} completed")
                log_event("deploy_step_completed", level=logging.DEBUG, step=name)
            if not token.cancelled:
                self._complete(deployment)
        except StepFailed as exc:
            self._fail(deployment, exc.message)
        except Exception as exc:
            self._logger.exception("deploy.worker unexpected error deployment_id=%s", deployment.id)
            self._fail(deployment, str(exc) or exc.__class__.__name__)
        finally:
            with self._lock:
                self._release_locked(deployment)
                self._futures.pop(deployment.id, None)

    def _add_step(self, deployment: Deployment, name: str, description: str) -> None:
        with self._lock:
            self._append_step_locked(deployment, name, description)

    def _add_log(self, deployment: Deployment, message: str) -> None:
        with self._lock:
            self._append_log_locked(deployment, message)

    def _append_step_locked(self, deployment: Deployment, name: str, description: str) -> None:
        if deployment.status != DeploymentStatus.RUNNING:
            return
        deployment.steps.append(
            StepRecord(name=name, description=description, timestamp=self._now(), status=step_status(name))
        )

    def _append_log_locked(self, deployment: Deployment, message: str) -> None:
        if deployment.status != DeploymentStatus.RUNNING:
            return
        deployment.logs.append(LogEntry(timestamp=self._now(), message=message))

    def _complete(self, deployment: Deployment) -> None:
        with self._lock:
            if deployment.status != DeploymentStatus.RUNNING:
                return
            self._append_step_locked(deployment, "completed", "Deploy completed successfully")
            deployment.status = DeploymentStatus.SUCCESS
            deployment.endedAt = self._now()
            state = self._states.setdefault(deployment.environment, EnvironmentState())
            state.version = deployment.version
            state.lastDeploy = deployment.endedAt
            state.status = "healthy"
            self._release_locked(deployment)
        log_event(
            "deploy_completed",
            environment=deployment.environment,
            version=deployment.version,
            rollback=deployment.rollback,
        )
        self._persist()

    def _fail(self, deployment: Deployment, error: str) -> None:
        with self._lock:
            if deployment.status != DeploymentStatus.RUNNING:
                return
            self._append_step_locked(deployment, "failed", f"Deploy failed: {error}")
            self._append_log_locked(deployment, f"Deploy failed: {error}")
            deployment.status = DeploymentStatus.FAILED
            deployment.endedAt = self._now()
            deployment.error = error
            self._release_locked(deployment)
        log_event(
            "deploy_failed",
            level=logging.WARNING,
            environment=deployment.environment,
            error=error,
        )
        self._persist()

    def _release_locked(self, deployment: Deployment) -> None:
        if self._current is deployment:
            self._current = None
            self._token = None

    def _persist(self) -> None:
        if self.history_store is None:
            return
        with self._lock:
            finished = [item.model_copy(deep=True) for item in self._history if is_terminal(item.status)]
        with self._persist_lock:
            try:
                self.history_store.save(finished)
            except OSError:
                self._logger.exception("deploy.history save failed path=%s", self.history_store.path)

    def get(self, deployment_id: str) -> Deployment:
        with self._lock:
            for deployment in self._history:
                if deployment.id == deployment_id:
                    return deployment.model_copy(deep=True)
        raise NotFoundError(f"Deployment {deployment_id} not found")

    def logs(self, deployment_id: str) -> dict:
        deployment = self.get(deployment_id)
        return {
            "deployment": {
                "id": deployment.id,
                "environment": deployment.environment,
                "status": deployment.status.value,
                "startedAt": deployment.startedAt,
                "endedAt": deployment.endedAt,
            },
            "logs": [entry.model_dump() for entry in deployment.logs],
            "steps": [step.model_dump() for step in deployment.steps],
        }

    def current(self) -> Optional[Deployment]:
        with self._lock:
            return self._current.model_copy(deep=True) if self._current else None

    def status(self, recent: Optional[int] = None) -> dict:
        limit = self.display_limit if recent is None else recent
        with self._lock:
            current = self._current.model_copy(deep=True) if self._current else None
            environments = {name: state.model_dump() for name, state in self._states.items()}
            history = [item.model_copy(deep=True) for item in self._history[-limit:]] if limit > 0 else []
        return {
            "current": current.model_dump(mode="json") if current else None,
            "environments": environments,
            "history": [item.model_dump(mode="json") for item in history],
            "features": {
                "autoDeploy": self.auto_deploy,
                "rollbackEnabled": self.rollback_enabled,
                "environments": self.environments.names(),
            },
        }

    def history(
        self,
        limit: int = 20,
        environment: Optional[str] = None,
        status: Optional[str] = None,
    ) -> dict:
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        with self._lock:
            items = list(self._history)
            if environment:
                items = [item for item in items if item.environment == environment]
            if status:
                items = [item for item in items if item.status.value == status]
            total = len(items)
            selected = [item.model_copy(deep=True) for item in items[-limit:]]
        return {
            "deploys": [item.model_dump(mode="json") for item in selected],
            "total": total,
            "filters": {"environment": environment, "status": status, "limit": limit},
        }

    def environment_health(self) -> dict:
        with self._lock:
            states = {name: state.model_copy() for name, state in self._states.items()}
        checks = {}
        for name, state in states.items():
            try:
                health = self.executor.check_health(name)
            except Exception as exc:
                self._logger.warning("deploy.health check failed environment=%s error=%s", name, exc)
                checks[name] = {"status": "error", "error": str(exc)}
                continue
            checks[name] = {
                "status": "healthy" if health.get("healthy") else "unhealthy",
                "version": state.version,
                "lastDeploy": state.lastDeploy,
                "details": health.get("details"),
            }
        overall = all(check["status"] == "healthy" for check in checks.values())
        return {
            "overall": "healthy" if overall else "degraded",
            "environments": checks,
            "timestamp": self._now(),
        }

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            futures = list(self._futures.values())
        if not futures:
            return True
        _, pending = wait_futures(futures, timeout=timeout)
        return not pending

    def shutdown(self, wait: bool = True) -> None:
        try:
            self.cancel(cancelled_by="shutdown")
        except NotRunningError:
            pass
        self._pool.shutdown(wait=wait, cancel_futures=True)
