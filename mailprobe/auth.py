import base64
import secrets

from fastapi import HTTPException, Request, status

from . import config


def require_api_key(request: Request):
    if not config.API_KEY:
        return
    key = request.headers.get("x-api-key") or request.query_params.get("api_key") or ""
    if not secrets.compare_digest(key, config.API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail={"error": "invalid api key"})


def _basic_credentials(header: str) -> tuple:
    try:
        decoded = base64.b64decode(header.split(" ", 1)[1]).decode()
        user, pwd = decoded.split(":", 1)
    except (IndexError, ValueError):
        raise HTTPException(status_code=401, detail={"error": "invalid credentials"}, headers={"WWW-Authenticate": "Basic"})
    return user, pwd


def require_metrics_basic_auth(request: Request):
    if not (config.METRICS_USER and config.METRICS_PASS):
        return
    auth = request.headers.get("authorization", "")
    if not auth.lower().startswith("basic "):
        raise HTTPException(status_code=401, detail={"error": "basic auth required"}, headers={"WWW-Authenticate": "Basic"})
    user, pwd = _basic_credentials(auth)
    if not (secrets.compare_digest(user, config.METRICS_USER) and secrets.compare_digest(pwd, config.METRICS_PASS)):
        raise HTTPException(status_code=401, detail={"error": "invalid credentials"}, headers={"WWW-Authenticate": "Basic"})
