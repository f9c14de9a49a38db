from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_digest.models import EmployeeProfile, EmployeeSystemRole

logger = logging.getLogger("app.attendance_summary")

DROP_REASON_PROFILE_MISSING = "PROFILE_MISSING_OR_INACTIVE"
DROP_REASON_DUPLICATE = "DUPLICATE_ASSIGNMENT"


@dataclass(frozen=True, slots=True)
class Recipient:
    profile_id: int
    profile: EmployeeProfile


@dataclass(frozen=True, slots=True)
class DroppedAssignment:
    profile_id: int
    assignment_id: int | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile_id": self.profile_id,
            "assignment_id": self.assignment_id,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class RecipientResolution:
    recipients: list[Recipient] = field(default_factory=list)
    dropped: list[DroppedAssignment] = field(default_factory=list)
    assignment_count: int = 0

    @property
    def profile_ids(self) -> list[int]:
        return [item.profile_id for item in self.recipients]


def _fetch_role_assignments(session: Session, target_roles: Sequence[str]) -> list[EmployeeSystemRole]:
    return list(
        session.scalars(
            select(EmployeeSystemRole)
            .where(
                EmployeeSystemRole.roles.overlap(list(target_roles)),
                EmployeeSystemRole.is_active.is_(True),
            )
            .order_by(EmployeeSystemRole.id.asc())
        ).all()
    )


def _fetch_active_profiles(session: Session, profile_ids: set[int]) -> list[EmployeeProfile]:
    return list(
        session.scalars(
            select(EmployeeProfile).where(
                EmployeeProfile.id.in_(sorted(profile_ids)),
                EmployeeProfile.is_active.is_(True),
            )
        ).all()
    )


def merge_assignments_with_profiles(
    assignments: Sequence[EmployeeSystemRole],
    profiles: Sequence[EmployeeProfile],
) -> RecipientResolution:
    profiles_by_id = {profile.id: profile for profile in profiles}
    recipients: list[Recipient] = []
    dropped: list[DroppedAssignment] = []
    seen_profile_ids: set[int] = set()

    for assignment in assignments:
        profile_id = assignment.employee_profile_id
        profile = profiles_by_id.get(profile_id)
        if profile is None:
            logger.warning(
                "attendance_summary_recipient_dropped",
                extra={
                    "profile_id": profile_id,
                    "assignment_id": assignment.id,
                    "reason": DROP_REASON_PROFILE_MISSING,
                },
            )
            dropped.append(
                DroppedAssignment(
                    profile_id=profile_id,
                    assignment_id=assignment.id,
                    reason=DROP_REASON_PROFILE_MISSING,
                )
            )
            continue
        if profile_id in seen_profile_ids:
            dropped.append(
                DroppedAssignment(
                    profile_id=profile_id,
                    assignment_id=assignment.id,
                    reason=DROP_REASON_DUPLICATE,
                )
            )
            continue
        seen_profile_ids.add(profile_id)
        recipients.append(Recipient(profile_id=profile_id, profile=profile))

    return RecipientResolution(
        recipients=recipients,
        dropped=dropped,
        assignment_count=len(assignments),
    )


def resolve_summary_recipients(session: Session, target_roles: Sequence[str]) -> RecipientResolution:
    try:
        assignments = _fetch_role_assignments(session, target_roles)
    except SQLAlchemyError:
        logger.exception("attendance_summary_role_lookup_failed", extra={"target_roles": list(target_roles)})
        return RecipientResolution()

    if not assignments:
        logger.warning(
            "attendance_summary_no_role_assignments",
            extra={"target_roles": list(target_roles)},
        )
        return RecipientResolution()

    profile_ids = {assignment.employee_profile_id for assignment in assignments}
    try:
        profiles = _fetch_active_profiles(session, profile_ids)
    except SQLAlchemyError:
        logger.exception(
            "attendance_summary_profile_lookup_failed",
            extra={"profile_count": len(profile_ids)},
        )
        return RecipientResolution(assignment_count=len(assignments))

    resolution = merge_assignments_with_profiles(assignments, profiles)
    logger.info(
        "attendance_summary_recipients_resolved",
        extra={
            "assignment_count": resolution.assignment_count,
            "active_profile_count": len(profiles),
            "recipient_count": len(resolution.recipients),
            "dropped_count": len(resolution.dropped),
        },
    )
    return resolution
