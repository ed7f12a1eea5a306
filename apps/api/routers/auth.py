"""
Account bootstrap router: first authenticated call creates the credit account.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from services.credits import ensure_credit_account

router = APIRouter()
logger = logging.getLogger(__name__)


class CurrentAccountResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    balance: int


async def _ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=email or f"{user_id}@local.invalid")
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent first request created it.
        await db.rollback()
        result = await db.execute(select(User).where(User.id == user_id))
        return result.scalar_one()
    logger.info("Created user record for account %s", user_id)
    return user


async def ensure_account(db: AsyncSession, auth: AuthContext) -> int:
    """Make sure the authenticated account exists with its initial grant; returns the balance."""
    await _ensure_user(db, auth.user_id, email=auth.email)
    return await ensure_credit_account(auth.user_id, db)


@router.get("/me", response_model=CurrentAccountResponse)
async def get_current_account(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the current account, creating it with the initial credit grant on first login."""
    balance = await ensure_account(db, auth)
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one()
    return CurrentAccountResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        balance=balance,
    )
