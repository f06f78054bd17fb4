"""Staging workflow rules: targets, push-job status derivation, commit state machine.

Pure domain functions shared by the server and the client sync controller.
No DB access, fully deterministic.
"""

from collections.abc import Iterable
from enum import StrEnum

from app.core.exceptions import InvalidStateError


class EntityType(StrEnum):
    TECHNOLOGY = "technology"
    PROJECT = "project"
    EXPERIENCE = "experience"
    EDUCATION = "education"


class ChangeAction(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Target(StrEnum):
    """Which backend(s) a change or push applies to."""

    PORTFOLIO = "portfolio"
    ENRICHMENT = "enrichment"
    BOTH = "both"


class CommitStatus(StrEnum):
    PENDING = "pending"
    APPLIED_PORTFOLIO = "applied_portfolio"
    APPLIED_ENRICHMENT = "applied_enrichment"
    APPLIED_ALL = "applied_all"
    FAILED = "failed"


class LegStatus(StrEnum):
    """Status of one backend leg of a push job."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class OverallStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    PORTFOLIO_DONE = "d1cv-done"
    ENRICHMENT_DONE = "ai-done"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_LEG_STATUSES = frozenset({LegStatus.SUCCESS, LegStatus.FAILED, LegStatus.SKIPPED})

# Legal per-leg transitions; terminal statuses never move again
LEG_TRANSITIONS: dict[LegStatus, frozenset[LegStatus]] = {
    LegStatus.PENDING: frozenset(
        {LegStatus.IN_PROGRESS, LegStatus.SUCCESS, LegStatus.FAILED, LegStatus.SKIPPED}
    ),
    LegStatus.IN_PROGRESS: frozenset({LegStatus.SUCCESS, LegStatus.FAILED}),
    LegStatus.SUCCESS: frozenset(),
    LegStatus.FAILED: frozenset(),
    LegStatus.SKIPPED: frozenset(),
}

PORTFOLIO_PUSHABLE = frozenset({CommitStatus.PENDING, CommitStatus.FAILED, CommitStatus.APPLIED_ENRICHMENT})
ENRICHMENT_PUSHABLE = frozenset({CommitStatus.PENDING, CommitStatus.APPLIED_PORTFOLIO, CommitStatus.FAILED})


def target_includes(target: Target | str, side: Target | str) -> bool:
    """True when ``target`` covers the single backend ``side``."""
    target = Target(target)
    return target == Target.BOTH or target == Target(side)


def union_targets(targets: Iterable[Target | str]) -> Target:
    """Union of change targets. Raises ValueError on an empty iterable."""
    sides: set[Target] = set()
    for t in targets:
        t = Target(t)
        if t == Target.BOTH:
            return Target.BOTH
        sides.add(t)
    if not sides:
        raise ValueError("cannot union an empty set of targets")
    if len(sides) == 2:
        return Target.BOTH
    return sides.pop()


def can_transition_leg(current: LegStatus | str, new: LegStatus | str) -> bool:
    return LegStatus(new) in LEG_TRANSITIONS[LegStatus(current)]


def is_leg_terminal(status: LegStatus | str) -> bool:
    return LegStatus(status) in TERMINAL_LEG_STATUSES


def is_job_terminal(portfolio: LegStatus | str, enrichment: LegStatus | str) -> bool:
    """A job is terminal once neither leg can move any more."""
    return is_leg_terminal(portfolio) and is_leg_terminal(enrichment)


def derive_overall_status(portfolio: LegStatus | str, enrichment: LegStatus | str) -> OverallStatus:
    """Combine the two leg statuses into the job's overall status.

    Rules (first match wins):
        - either leg failed                         -> failed
        - either leg in-progress                    -> in-progress
        - both legs success                         -> completed
        - portfolio success, enrichment pending/skipped -> d1cv-done
        - enrichment success, portfolio skipped     -> ai-done
        - enrichment success, portfolio pending     -> in-progress (portfolio still owed)
        - any other pending/skipped combination     -> pending
    """
    p = LegStatus(portfolio)
    e = LegStatus(enrichment)

    if LegStatus.FAILED in (p, e):
        return OverallStatus.FAILED
    if LegStatus.IN_PROGRESS in (p, e):
        return OverallStatus.IN_PROGRESS
    if p == LegStatus.SUCCESS and e == LegStatus.SUCCESS:
        return OverallStatus.COMPLETED
    if p == LegStatus.SUCCESS:
        return OverallStatus.PORTFOLIO_DONE
    if e == LegStatus.SUCCESS:
        if p == LegStatus.SKIPPED:
            return OverallStatus.ENRICHMENT_DONE
        return OverallStatus.IN_PROGRESS
    return OverallStatus.PENDING


def check_push_eligible(
    side: Target | str,
    status: CommitStatus | str,
    commit_target: Target | str,
    portfolio_applied: bool,
    enrichment_applied: bool,
) -> None:
    """Validate that ``side`` of a commit may be pushed.

    Raises:
        InvalidStateError: commit target does not include the side, the side
            was already applied, or the commit status forbids the push.
    """
    side = Target(side)
    status = CommitStatus(status)

    if side == Target.BOTH:
        if status not in (CommitStatus.PENDING, CommitStatus.FAILED):
            raise InvalidStateError(f"Commit in status '{status}' cannot be pushed to both targets")
        if (not target_includes(commit_target, Target.PORTFOLIO) or portfolio_applied) and (
            not target_includes(commit_target, Target.ENRICHMENT) or enrichment_applied
        ):
            raise InvalidStateError("Commit has nothing left to push")
        return

    if not target_includes(commit_target, side):
        raise InvalidStateError(f"Commit targets '{commit_target}' and cannot be pushed to {side}")

    applied = portfolio_applied if side == Target.PORTFOLIO else enrichment_applied
    if applied:
        raise InvalidStateError(f"Commit is already applied to {side}")

    allowed = PORTFOLIO_PUSHABLE if side == Target.PORTFOLIO else ENRICHMENT_PUSHABLE
    if status not in allowed:
        raise InvalidStateError(f"Commit in status '{status}' cannot be pushed to {side}")


def initial_leg_statuses(
    push_target: Target | str,
    commit_target: Target | str,
    portfolio_applied: bool,
    enrichment_applied: bool,
) -> tuple[LegStatus, LegStatus]:
    """Legs a new push job starts with: pending when required, skipped otherwise."""

    def _leg(side: Target, applied: bool) -> LegStatus:
        if target_includes(push_target, side) and target_includes(commit_target, side) and not applied:
            return LegStatus.PENDING
        return LegStatus.SKIPPED

    return (
        _leg(Target.PORTFOLIO, portfolio_applied),
        _leg(Target.ENRICHMENT, enrichment_applied),
    )


def resolve_commit_status(portfolio_applied: bool, enrichment_applied: bool, failed: bool) -> CommitStatus:
    """Commit status after a push job reached its terminal state."""
    if failed:
        return CommitStatus.FAILED
    if portfolio_applied and enrichment_applied:
        return CommitStatus.APPLIED_ALL
    if portfolio_applied:
        return CommitStatus.APPLIED_PORTFOLIO
    if enrichment_applied:
        return CommitStatus.APPLIED_ENRICHMENT
    return CommitStatus.PENDING


def failed_target(portfolio: LegStatus | str, enrichment: LegStatus | str) -> Target | None:
    """Which side(s) failed in a job, for the commit's error_target."""
    p_failed = LegStatus(portfolio) == LegStatus.FAILED
    e_failed = LegStatus(enrichment) == LegStatus.FAILED
    if p_failed and e_failed:
        return Target.BOTH
    if p_failed:
        return Target.PORTFOLIO
    if e_failed:
        return Target.ENRICHMENT
    return None


def outcome_failed_target(
    portfolio: LegStatus | str,
    enrichment: LegStatus | str,
    portfolio_applied: bool,
    enrichment_applied: bool,
) -> Target | None:
    """Failed side(s) of a job that still count against the commit.

    A failure on a side the commit already has applied is stale (the side
    was applied by another push) and never downgrades the commit.
    """
    p = LegStatus(portfolio)
    e = LegStatus(enrichment)
    if portfolio_applied and p == LegStatus.FAILED:
        p = LegStatus.SKIPPED
    if enrichment_applied and e == LegStatus.FAILED:
        e = LegStatus.SKIPPED
    return failed_target(p, e)
