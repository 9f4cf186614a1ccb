"""
Visibility resolver

Filters expanded occurrences down to what one viewer may see and annotates
cancellations. Relationship checks are coalesced so each distinct
(kind, viewer, subject) question is asked once per query, concurrently,
inside the caller's deadline. Anything that cannot be confirmed is hidden.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from models.calendar import Occurrence, ResolvedOccurrence, Visibility
from services.relationship_oracle import RelationshipOracle
from utils.exceptions import OracleUnavailable

logger = logging.getLogger(__name__)

CheckKey = Tuple[str, str, str]


@dataclass
class VisibilityResult:
    items: List[ResolvedOccurrence] = field(default_factory=list)
    undetermined_event_ids: List[str] = field(default_factory=list)


def required_check(occurrence: Occurrence, viewer_id: Optional[str]) -> Union[bool, CheckKey]:
    """Decide locally, or return the oracle question that decides"""
    event = occurrence.event
    if event.visibility == Visibility.PUBLIC:
        return True
    if viewer_id is None:
        return False
    if event.visibility == Visibility.PRIVATE:
        return viewer_id == event.owner_id
    if event.visibility == Visibility.FRIENDS:
        if viewer_id == event.owner_id:
            return True
        return ("friend", viewer_id, event.owner_id)
    if event.visibility == Visibility.COMMUNITY:
        if not event.community_id:
            return False
        return ("community", viewer_id, event.community_id)
    return False


class VisibilityResolver:
    """Applies the four-tier visibility model using a relationship oracle"""

    def __init__(self, oracle: RelationshipOracle, oracle_timeout: Optional[float] = None):
        self.oracle = oracle
        self.oracle_timeout = oracle_timeout

    async def _ask(self, check: CheckKey) -> bool:
        kind, viewer_id, subject = check
        if kind == "friend":
            call = self.oracle.is_friend(viewer_id, subject)
        else:
            call = self.oracle.is_community_member(viewer_id, subject)
        if self.oracle_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.oracle_timeout)
        except asyncio.TimeoutError:
            raise OracleUnavailable(
                f"{kind} check timed out", {"viewer_id": viewer_id, "subject": subject}
            )

    async def _answer_checks(
        self, checks: Sequence[CheckKey], deadline: Optional[float]
    ) -> Dict[CheckKey, Optional[bool]]:
        """Run every distinct check concurrently; None marks "undetermined" """
        answers: Dict[CheckKey, Optional[bool]] = {}
        if not checks:
            return answers

        tasks = {asyncio.ensure_future(self._ask(check)): check for check in checks}
        done, pending = await asyncio.wait(tasks.keys(), timeout=deadline)

        for task in pending:
            task.cancel()
            answers[tasks[task]] = None
        if pending:
            logger.warning("%d relationship checks missed the %.2fs deadline", len(pending), deadline)
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            check = tasks[task]
            error = task.exception()
            if error is None:
                answers[check] = bool(task.result())
                continue
            if not isinstance(error, OracleUnavailable):
                logger.error("Relationship check %s raised %r", check, error)
            else:
                logger.warning("Relationship check %s unavailable: %s", check, error.message)
            answers[check] = None
        return answers

    async def resolve(
        self,
        occurrences: Sequence[Occurrence],
        viewer_id: Optional[str],
        deadline: Optional[float] = None,
    ) -> VisibilityResult:
        """Filter and annotate occurrences for a viewer

        Args:
            occurrences: expanded occurrences, already ordered
            viewer_id: authenticated viewer, None for anonymous
            deadline: seconds allowed for all relationship checks

        Returns:
            VisibilityResult preserving input order
        """
        decisions: List[Union[bool, CheckKey]] = [
            required_check(occurrence, viewer_id) for occurrence in occurrences
        ]
        distinct_checks = list(dict.fromkeys(d for d in decisions if isinstance(d, tuple)))
        answers = await self._answer_checks(distinct_checks, deadline)

        result = VisibilityResult()
        undetermined = set()
        for occurrence, decision in zip(occurrences, decisions):
            if isinstance(decision, tuple):
                allowed = answers.get(decision)
                if allowed is None:
                    if occurrence.event_id not in undetermined:
                        undetermined.add(occurrence.event_id)
                        result.undetermined_event_ids.append(occurrence.event_id)
                    continue
            else:
                allowed = decision
            if not allowed:
                continue
            event = occurrence.event
            result.items.append(
                ResolvedOccurrence(
                    occurrence=occurrence,
                    is_cancelled=event.is_cancelled,
                    cancellation_reason=event.cancellation_reason if event.is_cancelled else None,
                )
            )

        if distinct_checks:
            logger.debug(
                "Resolved %d/%d occurrences for viewer %s with %d oracle checks",
                len(result.items), len(occurrences), viewer_id, len(distinct_checks),
            )
        return result

