"""
Contest API routes
Browsing, joining and leaderboards.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.config import settings
from tradearena.core.database import get_session
from tradearena.core.dependencies import get_current_user_id
from tradearena.core.security import limiter
from tradearena.models.contest import ContestResponse, ContestStatus, ParticipationResponse
from tradearena.models.leaderboard import LeaderboardResponse
from tradearena.services.contest_registry import ContestRegistry
from tradearena.services.participation import ParticipationManager
from tradearena.services.ranking import RankingEngine

router = APIRouter()


@router.get("", response_model=list[ContestResponse])
async def list_contests(
    status: Optional[ContestStatus] = None,
    session: AsyncSession = Depends(get_session),
):
    """Published contests, soonest start first."""
    return await ContestRegistry(session).list_contests(status=status, published_only=True)


@router.get("/mine", response_model=list[ContestResponse])
async def my_contests(
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    return await ParticipationManager(session).list_user_contests(user_id)


@router.get("/{contest_id}", response_model=ContestResponse)
async def get_contest(contest_id: UUID, session: AsyncSession = Depends(get_session)):
    return await ContestRegistry(session).get(contest_id)


@router.post("/{contest_id}/join", response_model=ParticipationResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT_JOIN)
async def join_contest(
    request: Request,
    contest_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Pay the entry fee and receive the contest's virtual capital."""
    return await ParticipationManager(session).join_contest(user_id, contest_id)


@router.get("/{contest_id}/participants", response_model=list[ParticipationResponse])
async def list_participants(contest_id: UUID, session: AsyncSession = Depends(get_session)):
    await ContestRegistry(session).get(contest_id)
    return await ParticipationManager(session).list_participants(contest_id)


@router.get("/{contest_id}/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(contest_id: UUID, session: AsyncSession = Depends(get_session)):
    return await RankingEngine(session).leaderboard(contest_id)
