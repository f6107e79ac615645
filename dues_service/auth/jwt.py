from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from ..config import settings
from ..constants import OPERATOR_ROLES, RESIDENT_ROLE

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as asserted by an identity-service token."""

    user_id: str
    roles: List[str] = field(default_factory=list)
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    token: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or (self.email or self.user_id)

    def has_role(self, role_name: str) -> bool:
        return role_name in self.roles

    def has_any_role(self, *role_names: str) -> bool:
        return any(role in self.roles for role in role_names)

    @property
    def is_operator(self) -> bool:
        return self.has_any_role(*OPERATOR_ROLES)

    @property
    def is_resident(self) -> bool:
        return self.has_role(RESIDENT_ROLE)


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def principal_from_payload(payload: dict, token: Optional[str] = None) -> Principal:
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    if payload.get("role") and payload["role"] not in roles:
        roles = [*roles, payload["role"]]
    return Principal(
        user_id=str(payload["sub"]),
        roles=list(roles),
        email=payload.get("email"),
        first_name=payload.get("firstName") or "",
        last_name=payload.get("lastName") or "",
        token=token,
    )


def get_current_principal(token: str = Depends(oauth2_scheme)) -> Principal:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(token)
        user_id: Optional[str] = payload.get("sub")
        token_type = payload.get("type")
        if user_id is None or token_type not in (None, "access"):
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    return principal_from_payload(payload, token=token)


def require_roles(*allowed_roles: str):
    allowed = set(allowed_roles)

    def role_checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not allowed:
            return principal
        if principal.has_any_role(*allowed):
            return principal
        raise HTTPException(status_code=403, detail="Operation not permitted for your role")

    return role_checker


require_operator = require_roles(*OPERATOR_ROLES)
