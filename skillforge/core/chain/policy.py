"""
Retry / Escalation Policy
=========================

Pure decision logic. Given a link, the outcome of its latest attempt and
the execution's counters, decide what happens next. No I/O, no session.

Rules (in order):
1. Success applies the link's on-success transition.
2. Failure bumps the chain-wide failure count first; exceeding the chain
   cap force-fails the execution regardless of the link's own budget.
   Within the link budget the same link is retried; once exhausted the
   link's on-failure transition applies.
3. Skipped advances by position with no failure accounting.

A post-exhaustion `retry` transition restarts the link's attempt counter
at 1 rather than looping on the exhausted budget.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from skillforge.core.chain.errors import InvalidStateError
from skillforge.core.models import (
    DecisionKind,
    LinkExecutionOutcome,
    SkillChainLink,
    TransitionType,
)

RETRIES_EXHAUSTED_REASON = "link retries exhausted"


@dataclass(frozen=True)
class Decision:
    """Result of applying the policy to one attempt."""
    kind: DecisionKind
    total_failure_count: int
    target_link_id: Optional[UUID] = None
    reason: Optional[str] = None
    transition: Optional[TransitionType] = None
    reset_attempts: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.kind in (DecisionKind.COMPLETE, DecisionKind.FORCE_FAIL)


def decide(
    link: SkillChainLink,
    attempt_number: int,
    outcome: LinkExecutionOutcome,
    total_failure_count: int,
    max_total_failures: int,
    next_link_id: Optional[UUID] = None,
) -> Decision:
    """
    Decide the next transition for an execution.

    Args:
        link: Link whose attempt just finished
        attempt_number: 1-based attempt counter for this link
        outcome: Reported outcome
        total_failure_count: Chain-wide failures before this attempt
        max_total_failures: Chain-wide failure cap
        next_link_id: Next link by position, None if `link` is last

    Returns:
        Decision carrying the updated failure count
    """
    if outcome == LinkExecutionOutcome.SUCCESS:
        return _on_success(link, total_failure_count, next_link_id)

    if outcome == LinkExecutionOutcome.FAILURE:
        return _on_failure(link, attempt_number, total_failure_count + 1, max_total_failures)

    if outcome == LinkExecutionOutcome.SKIPPED:
        if next_link_id is None:
            return Decision(kind=DecisionKind.COMPLETE, total_failure_count=total_failure_count)
        return Decision(
            kind=DecisionKind.ADVANCE,
            total_failure_count=total_failure_count,
            target_link_id=next_link_id,
        )

    raise InvalidStateError(f"Outcome '{outcome.value}' cannot be recorded")


def _on_success(
    link: SkillChainLink,
    total_failure_count: int,
    next_link_id: Optional[UUID],
) -> Decision:
    transition = link.on_success_transition

    if transition == TransitionType.GO_TO_LINK:
        return Decision(
            kind=DecisionKind.ADVANCE,
            total_failure_count=total_failure_count,
            target_link_id=link.on_success_target_link_id,
            transition=transition,
        )

    if transition == TransitionType.NEXT_LINK and next_link_id is not None:
        return Decision(
            kind=DecisionKind.ADVANCE,
            total_failure_count=total_failure_count,
            target_link_id=next_link_id,
            transition=transition,
        )

    # Complete, or NextLink from the last link
    return Decision(
        kind=DecisionKind.COMPLETE,
        total_failure_count=total_failure_count,
        transition=transition,
    )


def _on_failure(
    link: SkillChainLink,
    attempt_number: int,
    failures: int,
    max_total_failures: int,
) -> Decision:
    if failures > max_total_failures:
        return Decision(
            kind=DecisionKind.FORCE_FAIL,
            total_failure_count=failures,
            reason=(
                f"Chain failure limit exceeded ({failures} > {max_total_failures}) "
                f"at link '{link.name}'"
            ),
        )

    if attempt_number < link.max_retries:
        return Decision(kind=DecisionKind.RETRY_SAME_LINK, total_failure_count=failures)

    transition = link.on_failure_transition

    if transition == TransitionType.RETRY:
        return Decision(
            kind=DecisionKind.RETRY_SAME_LINK,
            total_failure_count=failures,
            transition=transition,
            reset_attempts=True,
        )

    if transition == TransitionType.GO_TO_LINK:
        return Decision(
            kind=DecisionKind.ADVANCE,
            total_failure_count=failures,
            target_link_id=link.on_failure_target_link_id,
            transition=transition,
        )

    return Decision(
        kind=DecisionKind.ESCALATE,
        total_failure_count=failures,
        reason=f"{RETRIES_EXHAUSTED_REASON}: '{link.name}' failed {attempt_number} time(s)",
        transition=TransitionType.ESCALATE,
    )


class RetryEscalationPolicy:
    """Injectable wrapper around `decide`."""

    def decide(
        self,
        link: SkillChainLink,
        attempt_number: int,
        outcome: LinkExecutionOutcome,
        total_failure_count: int,
        max_total_failures: int,
        next_link_id: Optional[UUID] = None,
    ) -> Decision:
        return decide(
            link,
            attempt_number,
            outcome,
            total_failure_count,
            max_total_failures,
            next_link_id,
        )
