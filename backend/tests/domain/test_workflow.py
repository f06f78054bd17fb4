"""Tests for the pure staging workflow rules."""

import itertools

import pytest

from app.core.exceptions import InvalidStateError
from app.domain.workflow import (
    CommitStatus,
    LegStatus,
    OverallStatus,
    Target,
    can_transition_leg,
    check_push_eligible,
    derive_overall_status,
    failed_target,
    initial_leg_statuses,
    is_job_terminal,
    outcome_failed_target,
    resolve_commit_status,
    target_includes,
    union_targets,
)

pytestmark = pytest.mark.unit

P, IP, S, F, SK = (
    LegStatus.PENDING,
    LegStatus.IN_PROGRESS,
    LegStatus.SUCCESS,
    LegStatus.FAILED,
    LegStatus.SKIPPED,
)

# (portfolio, enrichment) -> overall, every one of the 25 pairs
OVERALL_TABLE = {
    (P, P): OverallStatus.PENDING,
    (P, IP): OverallStatus.IN_PROGRESS,
    (P, S): OverallStatus.IN_PROGRESS,
    (P, F): OverallStatus.FAILED,
    (P, SK): OverallStatus.PENDING,
    (IP, P): OverallStatus.IN_PROGRESS,
    (IP, IP): OverallStatus.IN_PROGRESS,
    (IP, S): OverallStatus.IN_PROGRESS,
    (IP, F): OverallStatus.FAILED,
    (IP, SK): OverallStatus.IN_PROGRESS,
    (S, P): OverallStatus.PORTFOLIO_DONE,
    (S, IP): OverallStatus.IN_PROGRESS,
    (S, S): OverallStatus.COMPLETED,
    (S, F): OverallStatus.FAILED,
    (S, SK): OverallStatus.PORTFOLIO_DONE,
    (F, P): OverallStatus.FAILED,
    (F, IP): OverallStatus.FAILED,
    (F, S): OverallStatus.FAILED,
    (F, F): OverallStatus.FAILED,
    (F, SK): OverallStatus.FAILED,
    (SK, P): OverallStatus.PENDING,
    (SK, IP): OverallStatus.IN_PROGRESS,
    (SK, S): OverallStatus.ENRICHMENT_DONE,
    (SK, F): OverallStatus.FAILED,
    (SK, SK): OverallStatus.PENDING,
}


def test_overall_table_covers_every_pair():
    assert set(OVERALL_TABLE) == set(itertools.product(LegStatus, LegStatus))


@pytest.mark.parametrize(("portfolio", "enrichment"), list(OVERALL_TABLE))
def test_derive_overall_status(portfolio, enrichment):
    assert derive_overall_status(portfolio, enrichment) == OVERALL_TABLE[(portfolio, enrichment)]


def test_overall_status_wire_values():
    assert derive_overall_status("success", "pending") == "d1cv-done"
    assert derive_overall_status("skipped", "success") == "ai-done"


@pytest.mark.parametrize("terminal", [S, F, SK])
@pytest.mark.parametrize("new", list(LegStatus))
def test_terminal_legs_never_move(terminal, new):
    assert can_transition_leg(terminal, new) is False


def test_leg_forward_transitions():
    assert can_transition_leg(P, IP)
    assert can_transition_leg(P, SK)
    assert can_transition_leg(IP, S)
    assert can_transition_leg(IP, F)
    assert not can_transition_leg(IP, P)
    assert not can_transition_leg(IP, SK)
    assert not can_transition_leg(P, P)


def test_job_terminal_requires_both_legs():
    assert is_job_terminal(S, SK)
    assert is_job_terminal(F, S)
    assert not is_job_terminal(S, P)
    assert not is_job_terminal(IP, SK)


def test_union_targets():
    assert union_targets(["portfolio"]) == Target.PORTFOLIO
    assert union_targets(["enrichment", "enrichment"]) == Target.ENRICHMENT
    assert union_targets(["portfolio", "enrichment"]) == Target.BOTH
    assert union_targets(["portfolio", "both"]) == Target.BOTH
    with pytest.raises(ValueError):
        union_targets([])


def test_target_includes():
    assert target_includes("both", "portfolio")
    assert target_includes("both", "enrichment")
    assert target_includes("portfolio", "portfolio")
    assert not target_includes("portfolio", "enrichment")


# ============================================================================
# Push eligibility
# ============================================================================


def test_pending_commit_pushable_to_either_side():
    check_push_eligible(Target.PORTFOLIO, CommitStatus.PENDING, Target.BOTH, False, False)
    check_push_eligible(Target.ENRICHMENT, CommitStatus.PENDING, Target.BOTH, False, False)


def test_enrichment_allowed_after_portfolio_applied():
    check_push_eligible(Target.ENRICHMENT, CommitStatus.APPLIED_PORTFOLIO, Target.BOTH, True, False)


def test_applied_all_commit_rejected():
    with pytest.raises(InvalidStateError):
        check_push_eligible(Target.PORTFOLIO, CommitStatus.APPLIED_ALL, Target.BOTH, True, True)
    with pytest.raises(InvalidStateError):
        check_push_eligible(Target.ENRICHMENT, CommitStatus.APPLIED_ALL, Target.BOTH, True, True)


def test_side_outside_commit_target_rejected():
    with pytest.raises(InvalidStateError):
        check_push_eligible(Target.ENRICHMENT, CommitStatus.PENDING, Target.PORTFOLIO, False, False)


def test_already_applied_side_rejected_even_when_failed():
    # Failed on enrichment after a successful portfolio leg: only enrichment may be retried
    with pytest.raises(InvalidStateError):
        check_push_eligible(Target.PORTFOLIO, CommitStatus.FAILED, Target.BOTH, True, False)
    check_push_eligible(Target.ENRICHMENT, CommitStatus.FAILED, Target.BOTH, True, False)


def test_push_both_requires_pending_or_failed():
    check_push_eligible(Target.BOTH, CommitStatus.FAILED, Target.BOTH, True, False)
    with pytest.raises(InvalidStateError):
        check_push_eligible(Target.BOTH, CommitStatus.APPLIED_PORTFOLIO, Target.BOTH, True, False)


def test_initial_leg_statuses():
    assert initial_leg_statuses(Target.PORTFOLIO, Target.BOTH, False, False) == (P, SK)
    assert initial_leg_statuses(Target.BOTH, Target.BOTH, True, False) == (SK, P)
    assert initial_leg_statuses(Target.BOTH, Target.ENRICHMENT, False, False) == (SK, P)


def test_resolve_commit_status():
    assert resolve_commit_status(False, False, failed=False) == CommitStatus.PENDING
    assert resolve_commit_status(True, False, failed=False) == CommitStatus.APPLIED_PORTFOLIO
    assert resolve_commit_status(False, True, failed=False) == CommitStatus.APPLIED_ENRICHMENT
    assert resolve_commit_status(True, True, failed=False) == CommitStatus.APPLIED_ALL
    assert resolve_commit_status(True, False, failed=True) == CommitStatus.FAILED


def test_failed_target():
    assert failed_target(S, F) == Target.ENRICHMENT
    assert failed_target(F, SK) == Target.PORTFOLIO
    assert failed_target(F, F) == Target.BOTH
    assert failed_target(S, S) is None


def test_outcome_failed_target_ignores_already_applied_side():
    # Failure on a side another push already applied does not count
    assert outcome_failed_target(F, SK, portfolio_applied=True, enrichment_applied=False) is None
    assert outcome_failed_target(S, F, portfolio_applied=True, enrichment_applied=True) is None
    assert outcome_failed_target(F, F, portfolio_applied=False, enrichment_applied=True) == Target.PORTFOLIO
    assert outcome_failed_target(S, F, portfolio_applied=True, enrichment_applied=False) == Target.ENRICHMENT
