from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from alcpt.core.auth import TokenData, create_token, get_current_user
from alcpt.core.config import settings
from alcpt.core.database import get_db
from alcpt.models.schemas import UserOut
from alcpt.services import store

router = APIRouter()


class DevLogin(BaseModel):
    user_id: str = Field(min_length=1)
    roles: List[str] = ["student"]
    name: Optional[str] = None
    email: Optional[str] = None


@router.post("/dev-token")
async def dev_token(payload: DevLogin):
    if not settings.dev_login_enabled():
        raise HTTPException(404, "Not found")
    token = create_token(payload.user_id, payload.roles, name=payload.name, email=payload.email)
    return {"access_token": token, "token_type": "bearer", "roles": payload.roles}


@router.get("/user", response_model=UserOut)
async def current_user(user: TokenData = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await store.touch_user(db, user.sub, name=user.name, email=user.email)
