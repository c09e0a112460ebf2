"""Central status transition rules for intake links and intakes.

Services never hard-code which statuses may move where: conditional UPDATEs
build their ``WHERE status IN (...)`` guard from ``link_sources`` /
``intake_sources`` so the table below stays the single source of truth.
"""

from intakeai.core.exceptions import InvalidStateTransitionError
from intakeai.db.enums import IntakeLinkStatus, IntakeStatus

LINK_TRANSITIONS: dict[IntakeLinkStatus, frozenset[IntakeLinkStatus]] = {
    IntakeLinkStatus.PENDING: frozenset({IntakeLinkStatus.COMPLETED, IntakeLinkStatus.EXPIRED}),
    IntakeLinkStatus.COMPLETED: frozenset(),
    IntakeLinkStatus.EXPIRED: frozenset(),
}

# None = intake row being created
INTAKE_TRANSITIONS: dict[IntakeStatus | None, frozenset[IntakeStatus]] = {
    None: frozenset({IntakeStatus.READY_FOR_REVIEW}),
    IntakeStatus.READY_FOR_REVIEW: frozenset({IntakeStatus.REVIEWED}),
    IntakeStatus.REVIEWED: frozenset(),
}

SUMMARY_ELIGIBLE_STATUSES: frozenset[IntakeStatus] = frozenset(
    {IntakeStatus.READY_FOR_REVIEW, IntakeStatus.REVIEWED}
)


def _link_status(value: IntakeLinkStatus | str) -> IntakeLinkStatus:
    return value if isinstance(value, IntakeLinkStatus) else IntakeLinkStatus(value)


def _intake_status(value: IntakeStatus | str | None) -> IntakeStatus | None:
    if value is None or isinstance(value, IntakeStatus):
        return value
    return IntakeStatus(value)


def can_transition_link(current: IntakeLinkStatus | str, target: IntakeLinkStatus | str) -> bool:
    return _link_status(target) in LINK_TRANSITIONS[_link_status(current)]


def assert_link_transition(current: IntakeLinkStatus | str, target: IntakeLinkStatus | str) -> None:
    if not can_transition_link(current, target):
        raise InvalidStateTransitionError(
            "link_transition_denied",
            current=_link_status(current).value,
            target=_link_status(target).value,
        )


def link_sources(target: IntakeLinkStatus) -> list[str]:
    """Statuses a link may hold immediately before moving to ``target``."""
    return [status.value for status, targets in LINK_TRANSITIONS.items() if target in targets]


def is_terminal_link_status(status: IntakeLinkStatus | str) -> bool:
    return not LINK_TRANSITIONS[_link_status(status)]


def can_transition_intake(current: IntakeStatus | str | None, target: IntakeStatus | str) -> bool:
    return _intake_status(target) in INTAKE_TRANSITIONS[_intake_status(current)]


def assert_intake_transition(current: IntakeStatus | str | None, target: IntakeStatus | str) -> None:
    if not can_transition_intake(current, target):
        current_status = _intake_status(current)
        raise InvalidStateTransitionError(
            "intake_transition_denied",
            current=current_status.value if current_status else None,
            target=_intake_status(target).value,
        )


def intake_sources(target: IntakeStatus) -> list[str]:
    """Existing intake statuses that may move to ``target``."""
    return [
        status.value
        for status, targets in INTAKE_TRANSITIONS.items()
        if status is not None and target in targets
    ]


def ensure_summary_allowed(status: IntakeStatus | str) -> None:
    """Summary generation is only permitted on reviewable intakes."""
    if _intake_status(status) not in SUMMARY_ELIGIBLE_STATUSES:
        raise InvalidStateTransitionError("summary_not_allowed", current=str(status))
