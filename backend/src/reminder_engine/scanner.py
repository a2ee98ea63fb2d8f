from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta

from .lifecycle import ACTIVE_STATUSES, EXPIRING_SOON_DAYS, classify, days_between, days_until_birthday, next_birthday
from .store import ClientRepository, PackageAssignment, Subject

logger = logging.getLogger(__name__)

# end_date - today -> trigger
EXPIRY_TRIGGER_BY_OFFSET: dict[int, str] = {
    3: "expiry_before_3d",
    0: "expiry_on",
    -3: "expiry_after_3d",
}
EXPIRY_LOOKBACK_DAYS = 3


@dataclass(frozen=True)
class DueTrigger:
    subject: Subject
    trigger_type: str
    # Ledger key owner: the client id for birthdays, the assignment id for expiry reminders.
    ledger_subject_id: str
    address: str
    assignment: PackageAssignment | None = None
    days_offset: int = 0


@dataclass(frozen=True)
class ScanOmission:
    subject_id: str
    trigger_type: str
    reason: str
    assignment_id: str | None = None


@dataclass
class ScanReport:
    due: list[DueTrigger] = field(default_factory=list)
    omissions: list[ScanOmission] = field(default_factory=list)

    @property
    def omitted_count(self) -> int:
        return len(self.omissions)

    def extend(self, other: ScanReport) -> None:
        self.due.extend(other.due)
        self.omissions.extend(other.omissions)


def expiry_trigger_for(assignment: PackageAssignment, today: date) -> tuple[str, int] | None:
    offset = days_between(today, assignment.end_date)
    trigger_type = EXPIRY_TRIGGER_BY_OFFSET.get(offset)
    if trigger_type is None:
        return None
    derived = classify(assignment.start_date, assignment.end_date, today)
    # The after-expiry follow-up is the only trigger that fires on an expired package.
    if derived not in ACTIVE_STATUSES and trigger_type != "expiry_after_3d":
        return None
    return trigger_type, offset


class ReminderScanner:
    """Finds the time-triggered messages due on a given day.

    The scanner never consults the trigger ledger; deduplication happens at
    dispatch time so that a scan is free of side effects.
    """

    def __init__(self, repository: ClientRepository) -> None:
        self._repository = repository

    def scan(self, today: date) -> ScanReport:
        report = self.scan_birthdays(today)
        report.extend(self.scan_expiries(today))
        return report

    def scan_birthdays(self, today: date) -> ScanReport:
        report = ScanReport()
        for subject in self._repository.list_subjects_with_birthdate():
            if subject.date_of_birth is None or next_birthday(subject.date_of_birth, today) != today:
                continue
            address = subject.resolve_address()
            if address is None:
                report.omissions.append(
                    ScanOmission(subject_id=subject.subject_id, trigger_type="birthday", reason="no_contact_address")
                )
                continue
            report.due.append(
                DueTrigger(
                    subject=subject,
                    trigger_type="birthday",
                    ledger_subject_id=subject.subject_id,
                    address=address,
                )
            )
        logger.info("birthday scan for %s: due=%d omitted=%d", today, len(report.due), report.omitted_count)
        return report

    def scan_expiries(self, today: date) -> ScanReport:
        report = ScanReport()
        candidates = self._repository.list_package_assignments(
            ending_on_or_after=today - timedelta(days=EXPIRY_LOOKBACK_DAYS)
        )
        for assignment in candidates:
            matched = expiry_trigger_for(assignment, today)
            if matched is None:
                continue
            trigger_type, offset = matched
            subject = self._repository.get_subject(assignment.subject_id)
            if subject is None:
                report.omissions.append(
                    ScanOmission(
                        subject_id=assignment.subject_id,
                        trigger_type=trigger_type,
                        reason="subject_missing",
                        assignment_id=assignment.assignment_id,
                    )
                )
                continue
            address = subject.resolve_address()
            if address is None:
                report.omissions.append(
                    ScanOmission(
                        subject_id=subject.subject_id,
                        trigger_type=trigger_type,
                        reason="no_contact_address",
                        assignment_id=assignment.assignment_id,
                    )
                )
                continue
            report.due.append(
                DueTrigger(
                    subject=subject,
                    trigger_type=trigger_type,
                    ledger_subject_id=assignment.assignment_id,
                    address=address,
                    assignment=assignment,
                    days_offset=offset,
                )
            )
        logger.info("expiry scan for %s: due=%d omitted=%d", today, len(report.due), report.omitted_count)
        return report

    def upcoming_birthdays(
        self,
        today: date,
        *,
        within_days: int = 7,
        organization_id: str | None = None,
    ) -> list[tuple[Subject, int]]:
        rows: list[tuple[Subject, int]] = []
        for subject in self._repository.list_subjects_with_birthdate():
            if organization_id is not None and subject.organization_id != organization_id:
                continue
            if subject.date_of_birth is None:
                continue
            remaining = days_until_birthday(subject.date_of_birth, today)
            if remaining <= within_days:
                rows.append((subject, remaining))
        return sorted(rows, key=lambda value: (value[1], value[0].subject_id))

    def expiring_packages(
        self,
        today: date,
        *,
        within_days: int = EXPIRING_SOON_DAYS,
        organization_id: str | None = None,
    ) -> list[tuple[PackageAssignment, int]]:
        rows: list[tuple[PackageAssignment, int]] = []
        for assignment in self._repository.list_package_assignments(
            ending_on_or_after=today,
            organization_id=organization_id,
        ):
            if assignment.start_date > today:
                continue
            remaining = days_between(today, assignment.end_date)
            if remaining <= within_days:
                rows.append((assignment, remaining))
        return rows
