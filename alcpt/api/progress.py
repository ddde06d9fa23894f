from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from alcpt.core.auth import TokenData, get_current_user
from alcpt.core.database import get_db
from alcpt.models.schemas import ProgressOut
from alcpt.services import store

router = APIRouter()


@router.get("/user/progress", response_model=List[ProgressOut])
async def user_progress(user: TokenData = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await store.get_progress_for_user(db, user.sub)


@router.get("/tests/{test_id}/progress", response_model=List[ProgressOut])
async def test_progress(test_id: int, user: TokenData = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    await store.require_test(db, test_id)
    return await store.get_progress_for_test(db, test_id, user.sub)
