"""
SkillForge - Retry / Escalation Policy Tests
============================================

The policy is pure, so links are built in memory.
"""

from uuid import uuid4

import pytest

from skillforge.core.chain import InvalidStateError, RetryEscalationPolicy, decide
from skillforge.core.chain.policy import RETRIES_EXHAUSTED_REASON
from skillforge.core.models import (
    DecisionKind,
    LinkExecutionOutcome,
    SkillChainLink,
    TransitionType,
)


def make_link(**overrides) -> SkillChainLink:
    fields = {
        "id": uuid4(),
        "skill_chain_id": uuid4(),
        "position": 0,
        "name": "implement",
        "skill_id": "code-writer",
        "max_retries": 3,
        "on_success_transition": TransitionType.NEXT_LINK,
        "on_success_target_link_id": None,
        "on_failure_transition": TransitionType.ESCALATE,
        "on_failure_target_link_id": None,
    }
    fields.update(overrides)
    return SkillChainLink(**fields)


# ==========================================================================
# Success
# ==========================================================================

class TestSuccess:
    """Success applies the link's on-success transition."""

    def test_next_link_advances(self):
        link = make_link()
        next_id = uuid4()

        decision = decide(link, 1, LinkExecutionOutcome.SUCCESS, 2, 5, next_id)

        assert decision.kind == DecisionKind.ADVANCE
        assert decision.target_link_id == next_id
        assert decision.total_failure_count == 2
        assert decision.transition == TransitionType.NEXT_LINK

    def test_next_link_on_last_link_completes(self):
        decision = decide(make_link(), 1, LinkExecutionOutcome.SUCCESS, 0, 5, None)

        assert decision.kind == DecisionKind.COMPLETE
        assert decision.is_terminal

    def test_complete_ignores_following_links(self):
        link = make_link(on_success_transition=TransitionType.COMPLETE)

        decision = decide(link, 1, LinkExecutionOutcome.SUCCESS, 0, 5, uuid4())

        assert decision.kind == DecisionKind.COMPLETE

    def test_go_to_link_uses_explicit_target(self):
        target = uuid4()
        link = make_link(
            on_success_transition=TransitionType.GO_TO_LINK,
            on_success_target_link_id=target,
        )

        decision = decide(link, 1, LinkExecutionOutcome.SUCCESS, 0, 5, uuid4())

        assert decision.kind == DecisionKind.ADVANCE
        assert decision.target_link_id == target


# ==========================================================================
# Failure
# ==========================================================================

class TestFailure:
    """Failure accounting, link budgets and the chain-wide cap."""

    def test_within_budget_retries_same_link(self):
        decision = decide(make_link(max_retries=3), 1, LinkExecutionOutcome.FAILURE, 0, 5)

        assert decision.kind == DecisionKind.RETRY_SAME_LINK
        assert decision.total_failure_count == 1
        assert not decision.reset_attempts

    def test_exhausted_budget_escalates(self):
        decision = decide(make_link(max_retries=3), 3, LinkExecutionOutcome.FAILURE, 2, 5)

        assert decision.kind == DecisionKind.ESCALATE
        assert decision.total_failure_count == 3
        assert decision.transition == TransitionType.ESCALATE
        assert decision.reason.startswith(RETRIES_EXHAUSTED_REASON)
        assert "'implement'" in decision.reason

    def test_zero_retries_escalates_on_first_failure(self):
        decision = decide(make_link(max_retries=0), 1, LinkExecutionOutcome.FAILURE, 0, 5)

        assert decision.kind == DecisionKind.ESCALATE

    def test_exhausted_budget_goes_to_failure_target(self):
        target = uuid4()
        link = make_link(
            max_retries=1,
            on_failure_transition=TransitionType.GO_TO_LINK,
            on_failure_target_link_id=target,
        )

        decision = decide(link, 1, LinkExecutionOutcome.FAILURE, 0, 5)

        assert decision.kind == DecisionKind.ADVANCE
        assert decision.target_link_id == target
        assert decision.total_failure_count == 1

    def test_exhausted_budget_with_retry_restarts_attempts(self):
        link = make_link(max_retries=2, on_failure_transition=TransitionType.RETRY)

        decision = decide(link, 2, LinkExecutionOutcome.FAILURE, 1, 5)

        assert decision.kind == DecisionKind.RETRY_SAME_LINK
        assert decision.reset_attempts
        assert decision.transition == TransitionType.RETRY

    def test_chain_cap_overrides_link_budget(self):
        """The failure that pushes the count past the cap force-fails."""
        decision = decide(make_link(max_retries=10), 1, LinkExecutionOutcome.FAILURE, 5, 5)

        assert decision.kind == DecisionKind.FORCE_FAIL
        assert decision.total_failure_count == 6
        assert "Chain failure limit exceeded" in decision.reason
        assert decision.is_terminal

    def test_reaching_cap_exactly_still_retries(self):
        decision = decide(make_link(max_retries=10), 1, LinkExecutionOutcome.FAILURE, 4, 5)

        assert decision.kind == DecisionKind.RETRY_SAME_LINK
        assert decision.total_failure_count == 5

    def test_zero_cap_fails_on_first_failure(self):
        decision = decide(make_link(), 1, LinkExecutionOutcome.FAILURE, 0, 0)

        assert decision.kind == DecisionKind.FORCE_FAIL


# ==========================================================================
# Skipped / Pending
# ==========================================================================

class TestOtherOutcomes:
    def test_skipped_advances_without_failure(self):
        next_id = uuid4()

        decision = decide(make_link(), 2, LinkExecutionOutcome.SKIPPED, 3, 5, next_id)

        assert decision.kind == DecisionKind.ADVANCE
        assert decision.target_link_id == next_id
        assert decision.total_failure_count == 3

    def test_skipped_last_link_completes(self):
        decision = decide(make_link(), 1, LinkExecutionOutcome.SKIPPED, 0, 5, None)

        assert decision.kind == DecisionKind.COMPLETE

    def test_pending_is_rejected(self):
        with pytest.raises(InvalidStateError):
            decide(make_link(), 1, LinkExecutionOutcome.PENDING, 0, 5)

    def test_policy_object_delegates(self):
        policy = RetryEscalationPolicy()
        link = make_link(max_retries=0)

        assert policy.decide(link, 1, LinkExecutionOutcome.FAILURE, 0, 5) == decide(
            link, 1, LinkExecutionOutcome.FAILURE, 0, 5
        )
