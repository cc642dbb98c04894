from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings
from app.core.context import get_request_context


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)
    name: str | None = None
    email: str | None = None


ANONYMOUS = "anonymous"


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub=ANONYMOUS)

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        # Invalid tokens carry no role, so every pipeline capability check fails.
        return AuthUser(sub=ANONYMOUS)

    subject = str(payload.get("sub", ANONYMOUS))
    roles = payload.get("roles", [])
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list):
        roles = []
    context = get_request_context(request)
    if context is not None:
        context.user_id = subject
    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        name=payload.get("name"),
        email=payload.get("email"),
    )


def issue_token(sub: str, roles: list[str], **claims: object) -> str:
    settings = get_settings()
    return jwt.encode({"sub": sub, "roles": roles, **claims}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
