"""
Approval quorum evaluation.

Pure functions over the votes of one approval step execution, ordered by
voter position. Nothing here reads or writes storage.
"""

from enum import Enum
from typing import Optional, Sequence

from .models import QuorumRule, Vote, VoteStatus


class Verdict(Enum):
    """Outcome of evaluating an approval step's votes"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def evaluate(rule: QuorumRule, votes: Sequence[Vote]) -> Verdict:
    """
    Combine votes into a verdict.

    A single rejection vetoes the step under every rule, including ``all``.
    """
    if any(vote.status == VoteStatus.REJECTED for vote in votes):
        return Verdict.REJECTED
    if not votes:
        return Verdict.PENDING

    approved = [vote for vote in votes if vote.status == VoteStatus.APPROVED]
    if rule == QuorumRule.ANY:
        return Verdict.APPROVED if approved else Verdict.PENDING
    # ALL and SEQUENTIAL both need every voter
    return Verdict.APPROVED if len(approved) == len(votes) else Verdict.PENDING


def next_voter_index(votes: Sequence[Vote]) -> int:
    """Index of the first voter, by position, who has not approved yet"""
    ordered = sorted(votes, key=lambda v: v.position)
    for index, vote in enumerate(ordered):
        if vote.status != VoteStatus.APPROVED:
            return index
    return len(ordered)


def expected_voter(votes: Sequence[Vote]) -> Optional[str]:
    """Voter whose turn it is under sequential quorum (None once all approved)"""
    ordered = sorted(votes, key=lambda v: v.position)
    index = next_voter_index(ordered)
    if index < len(ordered):
        return ordered[index].voter_id
    return None
