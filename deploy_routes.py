from typing import Callable, Optional

from fastapi import Header, Query, Request

from models import DeployStartRequest, Role, RollbackRequest, WebhookPayload


DEPLOYERS = {Role.ADMIN, Role.OPERATOR}
VIEWERS = {Role.ADMIN, Role.OPERATOR, Role.USER}


def _initiator(actor) -> str:
    return actor.username or actor.actor_id


def register_deploy_routes(
    app,
    *,
    get_orchestrator: Callable,
    get_actor: Callable,
    get_api_key_actor: Callable,
    enforce: Callable[[str, str], None],
    client_key: Callable[[Request], str],
    require_role: Callable,
) -> None:
    def _authorize(authorization: Optional[str], allowed: set, action: str):
        actor = get_actor(authorization)
        enforce("user", actor.actor_id)
        return actor, require_role(actor, allowed, action)

    @app.post("/deploy/start", status_code=202)
    def start_deployment(req: DeployStartRequest, authorization: Optional[str] = Header(None)):
        actor, role_error = _authorize(authorization, DEPLOYERS, "start deployments")
        if role_error:
            return role_error
        enforce("deploy", actor.actor_id)
        deployment = get_orchestrator().start(
            req.environment,
            branch=req.branch,
            version=req.version,
            rollback=req.rollback,
            initiator=_initiator(actor),
        )
        return {
            "message": f"Deployment to {deployment.environment} started",
            "deployment": {
                "id": deployment.id,
                "environment": deployment.environment,
                "status": deployment.status.value,
                "startedAt": deployment.startedAt,
            },
        }

    @app.post("/deploy/stop")
    def stop_deployment(authorization: Optional[str] = Header(None)):
        actor, role_error = _authorize(authorization, DEPLOYERS, "cancel deployments")
        if role_error:
            return role_error
        deployment = get_orchestrator().cancel(cancelled_by=_initiator(actor))
        return {"message": "Deployment cancelled successfully", "deployment": deployment.model_dump(mode="json")}

    @app.post("/deploy/rollback", status_code=202)
    def rollback_deployment(req: RollbackRequest, authorization: Optional[str] = Header(None)):
        actor, role_error = _authorize(authorization, DEPLOYERS, "roll back deployments")
        if role_error:
            return role_error
        enforce("deploy", actor.actor_id)
        deployment = get_orchestrator().rollback(req.environment, version=req.version, initiator=_initiator(actor))
        return {
            "message": f"Rollback to version {deployment.version} started",
            "deployment": {
                "id": deployment.id,
                "environment": deployment.environment,
                "version": deployment.version,
                "status": deployment.status.value,
                "startedAt": deployment.startedAt,
            },
        }

    @app.get("/deploy/status")
    def deployment_status(authorization: Optional[str] = Header(None)):
        _, role_error = _authorize(authorization, VIEWERS, "view deployment status")
        if role_error:
            return role_error
        return get_orchestrator().status()

    @app.get("/deploy/history")
    def deployment_history(
        limit: int = Query(20),
        environment: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        authorization: Optional[str] = Header(None),
    ):
        _, role_error = _authorize(authorization, VIEWERS, "view deployment history")
        if role_error:
            return role_error
        return get_orchestrator().history(limit=limit, environment=environment, status=status)

    @app.get("/deploy/logs/{deployment_id}")
    def deployment_logs(deployment_id: str, authorization: Optional[str] = Header(None)):
        _, role_error = _authorize(authorization, VIEWERS, "view deployment logs")
        if role_error:
            return role_error
        return get_orchestrator().logs(deployment_id)

    @app.get("/deploy/health")
    def environment_health(authorization: Optional[str] = Header(None)):
        _, role_error = _authorize(authorization, VIEWERS, "view environment health")
        if role_error:
            return role_error
        return get_orchestrator().environment_health()

    @app.post("/deploy/webhook")
    def deploy_webhook(
        payload: WebhookPayload,
        request: Request,
        x_api_key: Optional[str] = Header(None),
    ):
        enforce("strict", client_key(request))
        actor = get_api_key_actor(x_api_key)
        enforce("api_key", actor.actor_id)
        return get_orchestrator().webhook(payload.ref, repository=payload.repository, pusher=payload.pusher)
