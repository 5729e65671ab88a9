from typing import Iterable, Optional

from models import Deployment, DeploymentStatus


DEPLOY_STEPS = [
    ("validation", "Validating deployment configuration"),
    ("preparation", "Preparing deployment environment"),
    ("build", "Building application"),
    ("test", "Running tests"),
    ("deploy", "Deploying to environment"),
    ("verification", "Verifying deployment"),
]
TERMINAL_STATUSES = {DeploymentStatus.SUCCESS, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}


def is_terminal(status: Optional[DeploymentStatus]) -> bool:
    return status in TERMINAL_STATUSES


def step_status(name: str) -> str:
    return "failed" if name == "failed" else "completed"


def successful_for_environment(deployments: Iterable[Deployment], environment: str) -> list[Deployment]:
    return [
        deployment
        for deployment in deployments
        if deployment.environment == environment and deployment.status == DeploymentStatus.SUCCESS
    ]


def rollback_target_version(deployments: Iterable[Deployment], environment: str) -> Optional[str]:
    successes = successful_for_environment(deployments, environment)
    if len(successes) < 2:
        return None
    return successes[-2].version


def latest_success_by_environment(deployments: Iterable[Deployment]) -> dict[str, Deployment]:
    latest: dict[str, Deployment] = {}
    for deployment in deployments:
        if deployment.status == DeploymentStatus.SUCCESS:
            latest[deployment.environment] = deployment
    return latest
