"""
Tests for quorum evaluation
"""

import pytest
from datetime import datetime, timezone

from grc_workflow.models import QuorumRule, Vote, VoteStatus
from grc_workflow.quorum import Verdict, evaluate, expected_voter, next_voter_index


NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

P, A, R = VoteStatus.PENDING, VoteStatus.APPROVED, VoteStatus.REJECTED


def votes(*statuses):
    return [
        Vote(id=f"v{i}", created_at=NOW, updated_at=NOW, step_execution_id="ex-1",
             voter_id=f"voter-{i}", position=i, status=status)
        for i, status in enumerate(statuses)
    ]


class TestEvaluate:

    @pytest.mark.parametrize("rule,statuses,expected", [
        (QuorumRule.ANY, (P, P), Verdict.PENDING),
        (QuorumRule.ANY, (P, A), Verdict.APPROVED),
        (QuorumRule.ALL, (A, P), Verdict.PENDING),
        (QuorumRule.ALL, (A, A), Verdict.APPROVED),
        (QuorumRule.SEQUENTIAL, (A, A, P), Verdict.PENDING),
        (QuorumRule.SEQUENTIAL, (A, A, A), Verdict.APPROVED),
    ])
    def test_rules(self, rule, statuses, expected):
        assert evaluate(rule, votes(*statuses)) == expected

    @pytest.mark.parametrize("rule", list(QuorumRule))
    def test_single_rejection_vetoes(self, rule):
        assert evaluate(rule, votes(A, R, A)) == Verdict.REJECTED

    def test_rejection_wins_even_after_an_any_approval(self):
        assert evaluate(QuorumRule.ANY, votes(A, R)) == Verdict.REJECTED

    def test_no_votes_is_pending(self):
        assert evaluate(QuorumRule.ALL, []) == Verdict.PENDING


class TestSequentialTurn:

    def test_first_voter_starts(self):
        ballot = votes(P, P, P)
        assert next_voter_index(ballot) == 0
        assert expected_voter(ballot) == "voter-0"

    def test_turn_moves_with_leading_approvals(self):
        ballot = votes(A, P, P)
        assert next_voter_index(ballot) == 1
        assert expected_voter(ballot) == "voter-1"

    def test_order_follows_position_not_list_order(self):
        ballot = list(reversed(votes(A, A, P)))
        assert expected_voter(ballot) == "voter-2"

    def test_nobody_left_after_all_approved(self):
        ballot = votes(A, A)
        assert next_voter_index(ballot) == 2
        assert expected_voter(ballot) is None
