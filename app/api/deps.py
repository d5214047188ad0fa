import jwt
from fastapi import Header, HTTPException, Request
from jwt.exceptions import PyJWTError
from pydantic import BaseModel, ConfigDict

from app.config import Settings
from app.db import SessionLocal


class AuthConfig(BaseModel):
    """Token validation material, built once at startup and never mutated."""

    model_config = ConfigDict(frozen=True)

    jwt_secret: str
    jwt_algorithm: str = "HS256"

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthConfig":
        if not settings.jwt_secret:
            raise RuntimeError("JWT_SECRET must be configured")
        return cls(jwt_secret=settings.jwt_secret, jwt_algorithm=settings.jwt_algorithm)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def require_user_auth(
    request: Request,
    authorization: str | None = Header(default=None),
):
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    auth_config: AuthConfig = request.app.state.auth_config
    try:
        payload = jwt.decode(token, auth_config.jwt_secret, algorithms=[auth_config.jwt_algorithm])
    except PyJWTError:
        raise HTTPException(status_code=401, detail="Unauthorized")
    subject = payload.get("sub")
    if not subject or payload.get("typ", "access") != "access":
        raise HTTPException(status_code=401, detail="Unauthorized")
    roles_value = payload.get("roles")
    roles = [str(role) for role in roles_value] if isinstance(roles_value, list) else []
    request.state.actor_id = str(subject)
    return {"person_id": str(subject), "roles": roles}


__all__ = ["AuthConfig", "get_db", "require_user_auth"]
