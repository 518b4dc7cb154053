import secrets

from fastapi import APIRouter, HTTPException, Request, Response

from xerosync.infra.metrics import Metrics
from xerosync.settings import settings

router = APIRouter()


def _metrics_for(request: Request) -> Metrics:
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not metrics_client.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return metrics_client


def _presented_token(request: Request) -> str | None:
    scheme, _, credentials = (request.headers.get("Authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return request.query_params.get("token")


def _authorize_scrape(request: Request) -> None:
    # Only prod scrapes are token-gated.
    app_settings = getattr(request.app.state, "app_settings", None) or settings
    if app_settings.app_env != "prod":
        return
    expected = app_settings.metrics_token
    if not expected:
        raise HTTPException(status_code=500, detail="Metrics token misconfigured")
    presented = _presented_token(request)
    if not presented or not secrets.compare_digest(presented, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    metrics_client = _metrics_for(request)
    _authorize_scrape(request)
    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
