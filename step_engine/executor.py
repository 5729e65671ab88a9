import logging
import random
import threading
import time
from typing import Callable, Optional

import requests

from step_engine.redaction import redact_text, redact_url


class StepFailed(Exception):
    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step
        self.message = message


class CancellationToken:
    """Cooperative cancellation flag shared between the orchestrator and a running step sequence.

    Executors may poll it during long steps; the orchestrator checks it at step boundaries.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class StepExecutor:
    mode = "base"

    def run_step(self, step: str, context: dict, token: CancellationToken) -> None:
        raise NotImplementedError

    def check_health(self, environment: str) -> dict:
        raise NotImplementedError


class SimulatedStepExecutor(StepExecutor):
    mode = "simulated"

    def __init__(
        self,
        delay_range: tuple[float, float] = (2.0, 5.0),
        failure_probability: float = 0.05,
        seed: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        healthy_probability: float = 0.9,
    ) -> None:
        low, high = delay_range
        if low < 0 or high < low:
            raise ValueError("delay_range must be a non-negative (min, max) pair")
        if not 0.0 <= failure_probability <= 1.0:
            raise ValueError("failure_probability must be between 0 and 1")
        self.delay_range = (float(low), float(high))
        self.failure_probability = float(failure_probability)
        self.healthy_probability = float(healthy_probability)
        self._sleep = sleep
        self._rng = random.Random(seed)
        self._rng_lock = threading.Lock()
        self._logger = logging.getLogger("opsdeck.engine")

    def _draw(self) -> tuple[float, float]:
        with self._rng_lock:
            return self._rng.uniform(*self.delay_range), self._rng.random()

    def run_step(self, step: str, context: dict, token: CancellationToken) -> None:
        delay, roll = self._draw()
        if delay > 0:
            self._sleep(delay)
        self._logger.debug(
            "engine.simulated step=%s deployment_id=%s delay_s=%.2f",
            step,
            context.get("deploymentId"),
            delay,
        )
        if roll < self.failure_probability:
            raise StepFailed(step, f"Step {step} failed")

    def check_health(self, environment: str) -> dict:
        with self._rng_lock:
            healthy = self._rng.random() < self.healthy_probability
            response_time = self._rng.randint(50, 549)
        status = "ok" if healthy else "error"
        return {
            "healthy": healthy,
            "details": {
                "responseTime": response_time,
                "status": status,
                "checks": [{"name": name, "status": status} for name in ("database", "cache", "api")],
            },
        }


class HttpStepExecutor(StepExecutor):
    """Runs each deploy step against a remote provisioning engine.

    A step is a single blocking POST; the cancellation token is only honored
    between steps, like the simulated executor.
    """

    mode = "http"

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 10.0,
        request_id_provider: Optional[Callable[[], str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("Engine base URL is required for HTTP mode")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.request_id_provider = request_id_provider
        self._session = session or requests.Session()
        self._logger = logging.getLogger("opsdeck.engine")

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        request_id = self.request_id_provider() if self.request_id_provider else ""
        if request_id:
            headers["X-Request-Id"] = request_id
        return headers

    def _request(self, method: str, url: str, body: Optional[dict] = None) -> requests.Response:
        start = time.monotonic()
        try:
            response = self._session.request(
                method,
                url,
                json=body,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            latency_ms = (time.monotonic() - start) * 1000
            message = redact_text(f"Engine connection failed: {exc}")
            self._logger.warning(
                "engine.request method=%s url=%s status=error latency_ms=%.1f error=%s",
                method,
                redact_url(url),
                latency_ms,
                message,
            )
            raise RuntimeError(message) from exc
        latency_ms = (time.monotonic() - start) * 1000
        self._logger.info(
            "engine.request method=%s url=%s status=%s latency_ms=%.1f",
            method,
            redact_url(url),
            response.status_code,
            latency_ms,
        )
        return response

    def run_step(self, step: str, context: dict, token: CancellationToken) -> None:
        url = f"{self.base_url}/steps/{step}"
        body = {"step": step, **context}
        try:
            response = self._request("POST", url, body)
        except RuntimeError as exc:
            raise StepFailed(step, str(exc)) from exc
        if not 200 <= response.status_code < 300:
            snippet = (response.text or "").strip()[:200]
            message = f"Step {step} failed: engine HTTP {response.status_code}"
            if snippet:
                message = f"{message}: {snippet}"
            raise StepFailed(step, redact_text(message))

    def check_health(self, environment: str) -> dict:
        url = f"{self.base_url}/health/{environment}"
        try:
            response = self._request("GET", url)
        except RuntimeError as exc:
            return {"healthy": False, "details": {"status": "error", "error": str(exc)}}
        try:
            details = response.json()
        except ValueError:
            details = {}
        healthy = 200 <= response.status_code < 300
        if not isinstance(details, dict):
            details = {}
        details.setdefault("status", "ok" if healthy else "error")
        return {"healthy": healthy, "details": details}


def build_step_executor(settings, request_id_provider: Optional[Callable[[], str]] = None) -> StepExecutor:
    if settings.step_executor_mode == "http":
        return HttpStepExecutor(
            settings.engine_url,
            token=settings.engine_token,
            timeout_seconds=settings.engine_timeout_seconds,
            request_id_provider=request_id_provider,
        )
    if settings.step_executor_mode != "simulated":
        raise ValueError(f"Unsupported step executor mode: {settings.step_executor_mode}")
    return SimulatedStepExecutor(
        delay_range=(settings.step_delay_min_seconds, settings.step_delay_max_seconds),
        failure_probability=settings.step_failure_probability,
        seed=settings.step_seed,
    )
