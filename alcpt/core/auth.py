from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List, Optional
import jwt
from datetime import datetime, timedelta, timezone
from alcpt.core.config import settings


class TokenData(BaseModel):
    sub: str
    name: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = []


bearer = HTTPBearer()


def create_token(user_id: str, roles: List[str], name: Optional[str] = None, email: Optional[str] = None,
                 ttl_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = settings.ACCESS_TOKEN_TTL_MINUTES if ttl_minutes is None else ttl_minutes
    payload = {"sub": user_id, "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    if name: payload["name"] = name
    if email: payload["email"] = email
    return jwt.encode(payload, settings.APP_SECRET.get_secret_value(), algorithm=settings.JWT_ALGORITHM)


def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, settings.APP_SECRET.get_secret_value(), algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    return TokenData(sub=payload["sub"], name=payload.get("name"), email=payload.get("email"), roles=payload.get("roles", []))


def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        roles = set(user.roles)
        if not roles.intersection(set(required)):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user
    return checker
