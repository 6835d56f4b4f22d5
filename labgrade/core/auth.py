from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List
import jwt
from datetime import datetime, timedelta, timezone
from labgrade.core.config import settings

STAFF_ROLES = ("instructor", "ta", "admin")
ALL_ROLES = ("student",) + STAFF_ROLES

class TokenData(BaseModel):
    sub: str
    roles: List[str]

    @property
    def is_staff(self) -> bool:
        return bool(set(self.roles).intersection(STAFF_ROLES))

bearer = HTTPBearer()

def create_token(user_id: str, roles: List[str], ttl_minutes: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes if ttl_minutes is not None else settings.TOKEN_TTL_MINUTES
    payload = {"sub": user_id, "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    return jwt.encode(payload, settings.APP_SECRET.get_secret_value(), algorithm="HS256")

def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, settings.APP_SECRET.get_secret_value(), algorithms=["HS256"])
        return TokenData(sub=payload["sub"], roles=payload.get("roles", []))
    except (jwt.InvalidTokenError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        roles = set(user.roles)
        if not roles.intersection(set(required)):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user
    return checker

any_role = require_roles(*ALL_ROLES)
staff_only = require_roles(*STAFF_ROLES)
