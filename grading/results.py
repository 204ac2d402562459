"""
Value types shared by the grading engine.

Results and rankings are frozen: the engine replaces them through recomputation,
callers only read them.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from django.utils import timezone

from .calculations import is_passing, letter_grade
from .exceptions import PartialBatchFailure


SEMESTER_EXAM = 'SEMESTER_EXAM'
MONTHLY_PREFIX = 'MONTHLY_'
SEMESTERS = (1, 2)


def monthly_slot(number):
    """Slot code of the n-th monthly exam (MONTHLY_1, MONTHLY_2, ...)."""
    return f'{MONTHLY_PREFIX}{number}'


def monthly_index(slot):
    """Return n for a MONTHLY_n slot, None for any other slot."""
    if not slot.startswith(MONTHLY_PREFIX):
        return None
    try:
        number = int(slot[len(MONTHLY_PREFIX):])
    except ValueError:
        return None
    return number if number > 0 else None


class CalculationKind(enum.Enum):
    """Levels of the averaging hierarchy, lowest first."""
    MONTHLY = 'MONTHLY'
    SUBJECT_SEMESTER = 'SUBJECT_SEMESTER'
    OVERALL_SEMESTER = 'OVERALL_SEMESTER'
    SUBJECT_ANNUAL = 'SUBJECT_ANNUAL'
    OVERALL_ANNUAL = 'OVERALL_ANNUAL'

    @property
    def level(self):
        return _LEVELS[self]

    @property
    def per_subject(self):
        return self in (CalculationKind.MONTHLY, CalculationKind.SUBJECT_SEMESTER, CalculationKind.SUBJECT_ANNUAL)

    @property
    def annual(self):
        return self in (CalculationKind.SUBJECT_ANNUAL, CalculationKind.OVERALL_ANNUAL)


_LEVELS = {
    CalculationKind.MONTHLY: 0,
    CalculationKind.SUBJECT_SEMESTER: 1,
    CalculationKind.OVERALL_SEMESTER: 2,
    CalculationKind.SUBJECT_ANNUAL: 3,
    CalculationKind.OVERALL_ANNUAL: 3,
}


@dataclass(frozen=True)
class GradeEntry:
    """A raw exam score as read from the grade store."""
    student_id: Any
    subject_id: Any
    class_id: Any
    semester: int
    academic_year: str
    slot: str
    score: Decimal

    @property
    def monthly_index(self):
        return monthly_index(self.slot)

    @property
    def is_semester_exam(self):
        return self.slot == SEMESTER_EXAM


@dataclass(frozen=True)
class ResultKey:
    """Identity of a node in the averaging graph."""
    kind: CalculationKind
    student_id: Any
    academic_year: str
    subject_id: Any = None
    semester: Optional[int] = None

    def __post_init__(self):
        if self.kind.per_subject != (self.subject_id is not None):
            raise ValueError(f"{self.kind.value} results {'need' if self.kind.per_subject else 'take no'} subject_id")
        if self.kind.annual != (self.semester is None):
            raise ValueError(f"{self.kind.value} results {'take no' if self.kind.annual else 'need a'} semester")

    @classmethod
    def monthly(cls, student_id, subject_id, semester, academic_year):
        return cls(CalculationKind.MONTHLY, student_id, academic_year, subject_id, semester)

    @classmethod
    def subject_semester(cls, student_id, subject_id, semester, academic_year):
        return cls(CalculationKind.SUBJECT_SEMESTER, student_id, academic_year, subject_id, semester)

    @classmethod
    def overall_semester(cls, student_id, semester, academic_year):
        return cls(CalculationKind.OVERALL_SEMESTER, student_id, academic_year, None, semester)

    @classmethod
    def subject_annual(cls, student_id, subject_id, academic_year):
        return cls(CalculationKind.SUBJECT_ANNUAL, student_id, academic_year, subject_id, None)

    @classmethod
    def overall_annual(cls, student_id, academic_year):
        return cls(CalculationKind.OVERALL_ANNUAL, student_id, academic_year, None, None)

    @property
    def cache_key(self):
        subject = self.subject_id if self.subject_id is not None else 'overall'
        semester = self.semester if self.semester is not None else 'annual'
        return f'result:{self.kind.value}:{self.academic_year}:{self.student_id}:{subject}:{semester}'

    def __str__(self):
        return self.cache_key


@dataclass(frozen=True)
class GradeComponent:
    """One value that went into an average: an exam score, a subject or a semester."""
    name: str
    score: Decimal


@dataclass(frozen=True)
class CalculationDetails:
    """
    Breakdown of how an average was built, as shown on report cards.

    components are the values averaged (monthly exams, subjects or semesters).
    The weight fields are only set for subject-semester averages.
    """
    components: tuple = ()
    semester_exam: Optional[GradeComponent] = None
    monthly_weight: Optional[Decimal] = None
    semester_weight: Optional[Decimal] = None
    monthly_average: Optional[Decimal] = None
    weighted_monthly: Optional[Decimal] = None
    weighted_semester: Optional[Decimal] = None
    formula: str = ''


@dataclass(frozen=True)
class CalculationResult:
    """
    A computed average. Letter grade and pass/fail derive from average_value.

    config_version and input_version fingerprint the assessment config and
    the raw grades the value was computed from.
    """
    key: ResultKey
    class_id: Any
    average_value: Decimal
    config_version: str
    depends_on: tuple = ()
    input_version: str = ''
    details: Optional[CalculationDetails] = None
    computed_at: datetime = field(default_factory=timezone.now, compare=False)

    @property
    def kind(self):
        return self.key.kind

    @property
    def student_id(self):
        return self.key.student_id

    @property
    def subject_id(self):
        return self.key.subject_id

    @property
    def semester(self):
        return self.key.semester

    @property
    def academic_year(self):
        return self.key.academic_year

    @property
    def letter_grade(self):
        return letter_grade(self.average_value)

    @property
    def passed(self):
        return is_passing(self.average_value)


@dataclass(frozen=True)
class RankingScope:
    """A class (subject_id None) or class+subject ranking for a semester or the whole year."""
    class_id: Any
    academic_year: str
    subject_id: Any = None
    semester: Optional[int] = None

    @property
    def kind(self):
        if self.subject_id is None:
            return CalculationKind.OVERALL_ANNUAL if self.semester is None else CalculationKind.OVERALL_SEMESTER
        return CalculationKind.SUBJECT_ANNUAL if self.semester is None else CalculationKind.SUBJECT_SEMESTER

    def result_key(self, student_id):
        """Key of the result a student is ranked on within this scope."""
        return ResultKey(self.kind, student_id, self.academic_year, self.subject_id, self.semester)

    @property
    def cache_key(self):
        subject = self.subject_id if self.subject_id is not None else 'overall'
        semester = self.semester if self.semester is not None else 'annual'
        return f'ranking:{self.academic_year}:{self.class_id}:{subject}:{semester}'


@dataclass(frozen=True)
class RankingEntry:
    student_id: Any
    average_value: Decimal
    rank: int

    @property
    def letter_grade(self):
        return letter_grade(self.average_value)


@dataclass(frozen=True)
class Ranking:
    scope: RankingScope
    entries: tuple
    built_at: datetime = field(default_factory=timezone.now, compare=False)

    @property
    def total_students(self):
        return len(self.entries)

    def rank_of(self, student_id):
        for entry in self.entries:
            if entry.student_id == student_id:
                return entry.rank
        return None

    def rank_display(self, student_id):
        """Rank as shown on report cards, e.g. '3/35'."""
        rank = self.rank_of(student_id)
        if rank is None:
            return '-'
        return f'{rank}/{self.total_students}'


@dataclass(frozen=True)
class ChainFailure:
    """A student/subject recalculation chain that could not complete."""
    student_id: Any
    subject_id: Any
    cause: Exception

    def __str__(self):
        subject = self.subject_id if self.subject_id is not None else 'overall'
        return f'{self.student_id}/{subject}: {self.cause}'


@dataclass
class BatchResult:
    """Outcome of recalculating every chain of a class."""
    class_id: Any
    semester: Optional[int]
    academic_year: str
    successes: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    results: list = field(default_factory=list)
    rankings: list = field(default_factory=list)

    @property
    def ok(self):
        return not self.failures

    def raise_for_failures(self):
        if self.failures:
            raise PartialBatchFailure(self)

    def as_dict(self):
        """JSON-friendly summary (used as Celery task result)."""
        return {
            'class_id': str(self.class_id),
            'semester': self.semester,
            'academic_year': self.academic_year,
            'students_succeeded': len(self.successes),
            'students_failed': len({f.student_id for f in self.failures}),
            'failures': [
                {
                    'student_id': str(f.student_id),
                    'subject_id': str(f.subject_id) if f.subject_id is not None else None,
                    'cause': str(f.cause),
                }
                for f in self.failures
            ],
            'results': len(self.results),
            'rankings': len(self.rankings),
        }
