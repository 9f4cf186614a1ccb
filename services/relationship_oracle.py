"""
Relationship oracle

Answers "is V a friend of O" and "is V a member of C". The engine does not
own this data; it only asks. Implementations must be safe to call
concurrently and give the same answer for repeated identical questions.
"""

import logging
from typing import Iterable, Optional, Set, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models.database import CommunityMember, Friendship
from utils.exceptions import OracleUnavailable

logger = logging.getLogger(__name__)


class RelationshipOracle:
    """Base oracle interface"""

    async def is_friend(self, viewer_id: str, owner_id: str) -> bool:
        raise NotImplementedError

    async def is_community_member(self, viewer_id: str, community_id: str) -> bool:
        raise NotImplementedError


class SqlRelationshipOracle(RelationshipOracle):
    """Oracle backed by the friendships and community_members tables

    A friendship row counts in either direction once accepted.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def is_friend(self, viewer_id: str, owner_id: str) -> bool:
        if viewer_id == owner_id:
            return True
        stmt = (
            select(Friendship.id)
            .where(
                Friendship.accepted.is_(True),
                or_(
                    and_(Friendship.user_id == viewer_id, Friendship.friend_id == owner_id),
                    and_(Friendship.user_id == owner_id, Friendship.friend_id == viewer_id),
                ),
            )
            .limit(1)
        )
        return await self._exists(stmt, "is_friend", viewer_id, owner_id)

    async def is_community_member(self, viewer_id: str, community_id: str) -> bool:
        stmt = (
            select(CommunityMember.id)
            .where(
                CommunityMember.community_id == community_id,
                CommunityMember.user_id == viewer_id,
            )
            .limit(1)
        )
        return await self._exists(stmt, "is_community_member", viewer_id, community_id)

    async def _exists(self, stmt, check: str, viewer_id: str, subject: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return result.first() is not None
        except SQLAlchemyError as e:
            logger.warning("Oracle %s(%s, %s) failed: %s", check, viewer_id, subject, e)
            raise OracleUnavailable(
                f"{check} lookup failed",
                {"viewer_id": viewer_id, "subject": subject},
            ) from e


class StaticRelationshipOracle(RelationshipOracle):
    """Oracle over a fixed set of facts

    Friend pairs are symmetric. Ids listed in failing_subjects make the
    corresponding check raise OracleUnavailable.
    """

    def __init__(
        self,
        friends: Iterable[Tuple[str, str]] = (),
        memberships: Iterable[Tuple[str, str]] = (),
        failing_subjects: Optional[Iterable[str]] = None,
    ):
        self._friends: Set[frozenset] = {frozenset(pair) for pair in friends}
        self._memberships: Set[Tuple[str, str]] = set(memberships)
        self._failing: Set[str] = set(failing_subjects or ())
        self.calls = []

    async def is_friend(self, viewer_id: str, owner_id: str) -> bool:
        self.calls.append(("friend", viewer_id, owner_id))
        if owner_id in self._failing:
            raise OracleUnavailable("is_friend lookup failed", {"owner_id": owner_id})
        return viewer_id == owner_id or frozenset((viewer_id, owner_id)) in self._friends

    async def is_community_member(self, viewer_id: str, community_id: str) -> bool:
        self.calls.append(("community", viewer_id, community_id))
        if community_id in self._failing:
            raise OracleUnavailable(
                "is_community_member lookup failed", {"community_id": community_id}
            )
        return (community_id, viewer_id) in self._memberships
