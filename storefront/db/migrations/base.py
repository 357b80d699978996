"""Base types for the migration system.

Defines the core abstractions:
- MigrationUnit: one named block of SQL statements loaded from disk
- LedgerEntry: a row of the ledger table recording an applied unit
- MigrationRecord / RunReport: per-unit outcomes of a runner call
- MigrationError and its subclasses, keyed by ErrorKind
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class ErrorKind(str, Enum):
    """Semantic kind of a migration failure."""

    CONNECTION = "connection"
    SOURCE = "source"
    APPLY = "apply"
    LEDGER_CONFLICT = "ledger_conflict"
    NOT_FOUND = "not_found"


class MigrationError(Exception):
    """Base exception for migration errors."""

    kind: ErrorKind = ErrorKind.APPLY

    def __init__(self, message: str, report: Optional["RunReport"] = None):
        super().__init__(message)
        self.report = report


class MigrationConnectionError(MigrationError):
    """No database connection could be obtained."""

    kind = ErrorKind.CONNECTION


class MigrationSourceError(MigrationError):
    """The migration directory could not be enumerated or read."""

    kind = ErrorKind.SOURCE


class MigrationApplyError(MigrationError):
    """A unit's statements failed; its transaction was rolled back."""

    kind = ErrorKind.APPLY

    def __init__(
        self,
        unit_name: str,
        cause: BaseException,
        report: Optional["RunReport"] = None,
    ):
        super().__init__(f"Migration {unit_name} failed: {cause}", report)
        self.unit_name = unit_name
        self.cause = cause


class LedgerConflictError(MigrationError):
    """The ledger already holds the unit being recorded.

    Only happens when two runners work on the same database at once.
    """

    kind = ErrorKind.LEDGER_CONFLICT

    def __init__(self, unit_name: str, report: Optional["RunReport"] = None):
        super().__init__(
            f"Migration {unit_name} was recorded by another runner", report
        )
        self.unit_name = unit_name


class RollbackNotFoundError(MigrationError):
    """No rollback payload is registered for the unit."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, unit_name: str):
        super().__init__(f"No rollback registered for migration {unit_name}")
        self.unit_name = unit_name


class MigrationOutcome(str, Enum):
    """What happened to a unit during a runner call."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class MigrationStatus(str, Enum):
    """Persistent state of a unit relative to the ledger."""

    PENDING = "pending"
    APPLIED = "applied"
    ORPHANED = "orphaned"


@dataclass(frozen=True)
class MigrationUnit:
    """A named block of schema-change statements.

    The name is the file stem; it orders units and keys the ledger.
    """

    name: str
    path: Path
    sql: str

    def __repr__(self) -> str:
        return f"<MigrationUnit {self.name}>"


@dataclass
class LedgerEntry:
    """Row of the ledger table."""

    id: int
    name: str
    applied_at: Optional[datetime] = None


@dataclass
class MigrationRecord:
    """Outcome of one unit within a runner call."""

    name: str
    outcome: MigrationOutcome
    execution_time_ms: Optional[int] = None
    error: Optional[str] = None


@dataclass
class UnitStatus:
    """Status line for a unit, as shown by ``status``."""

    name: str
    status: MigrationStatus
    applied_at: Optional[datetime] = None


@dataclass
class RunReport:
    """Per-unit outcomes of one ``run()`` call, in application order."""

    records: list[MigrationRecord] = field(default_factory=list)

    def add(self, record: MigrationRecord) -> None:
        self.records.append(record)

    def _names(self, outcome: MigrationOutcome) -> list[str]:
        return [r.name for r in self.records if r.outcome == outcome]

    @property
    def applied(self) -> list[str]:
        return self._names(MigrationOutcome.APPLIED)

    @property
    def skipped(self) -> list[str]:
        return self._names(MigrationOutcome.SKIPPED)

    @property
    def failed(self) -> Optional[MigrationRecord]:
        for record in self.records:
            if record.outcome == MigrationOutcome.FAILED:
                return record
        return None

    @property
    def success(self) -> bool:
        return self.failed is None
