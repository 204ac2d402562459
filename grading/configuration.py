"""
Assessment configuration resolution.

The effective configuration of a (class, subject, semester, academic year)
tuple comes from the first resolver in an ordered list that has an answer:

    1. the teacher's override for that exact tuple
    2. the admin default for the academic year (semester row before year-wide row)
    3. the system default (GRADING_DEFAULT_* settings)

Resolution never fails: the system default always answers.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db.models import Q

from . import config
from .calculations import round_half_up, validate_weights

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssessmentConfig:
    """Immutable snapshot of a resolved assessment configuration."""
    monthly_exam_count: int
    monthly_weight: Decimal
    semester_weight: Decimal
    source: str = field(default='system', compare=False)

    def __post_init__(self):
        if self.monthly_exam_count is None or int(self.monthly_exam_count) < 1:
            raise ValidationError(
                f'Monthly exam count must be a positive integer (got {self.monthly_exam_count})',
                code='monthly_exam_count_out_of_range'
            )
        monthly, semester = validate_weights(self.monthly_weight, self.semester_weight)
        object.__setattr__(self, 'monthly_exam_count', int(self.monthly_exam_count))
        object.__setattr__(self, 'monthly_weight', monthly)
        object.__setattr__(self, 'semester_weight', semester)

    @property
    def version(self):
        """Fingerprint of the values; changes whenever the configuration does."""
        payload = (
            f'{self.monthly_exam_count}:'
            f'{round_half_up(self.monthly_weight)}:'
            f'{round_half_up(self.semester_weight)}'
        )
        return hashlib.sha1(payload.encode('utf-8')).hexdigest()[:12]

    @classmethod
    def system_default(cls):
        return cls(
            monthly_exam_count=config.DEFAULT_MONTHLY_EXAM_COUNT,
            monthly_weight=config.DEFAULT_MONTHLY_WEIGHT,
            semester_weight=config.DEFAULT_SEMESTER_WEIGHT,
            source='system',
        )


def _config_from_row(row, source):
    """Build a snapshot from a stored config row, or None if the row is unusable."""
    try:
        return AssessmentConfig(
            monthly_exam_count=row.monthly_exam_count,
            monthly_weight=row.monthly_weight,
            semester_weight=row.semester_weight,
            source=source,
        )
    except ValidationError as e:
        logger.warning(f"Skipping invalid {source} assessment config {row.pk}: {e.messages[0]}")
        return None


class TeacherConfigResolver:
    """Teacher override for the exact class/subject/semester/year."""
    source = 'teacher'

    def resolve(self, class_id, subject_id, semester, academic_year):
        from .models import TeacherAssessmentConfig

        row = TeacherAssessmentConfig.objects.filter(
            class_id=class_id,
            subject_id=subject_id,
            semester=semester,
            academic_year=academic_year
        ).first()
        if row is None:
            return None
        return _config_from_row(row, self.source)


class AcademicYearDefaultResolver:
    """Admin default for the academic year."""
    source = 'academic_year'

    def resolve(self, class_id, subject_id, semester, academic_year):
        from .models import DefaultAssessmentConfig

        rows = DefaultAssessmentConfig.objects.filter(
            Q(semester=semester) | Q(semester__isnull=True),
            academic_year=academic_year
        )
        # Semester-specific row wins over the year-wide one
        for row in sorted(rows, key=lambda r: r.semester is None):
            resolved = _config_from_row(row, self.source)
            if resolved is not None:
                return resolved
        return None


class SystemDefaultResolver:
    source = 'system'

    def resolve(self, class_id, subject_id, semester, academic_year):
        return AssessmentConfig.system_default()


class StaticConfigResolver:
    """Answers from an in-memory mapping of (class, subject, semester, year) -> config."""
    source = 'preloaded'

    def __init__(self, mapping):
        self.mapping = dict(mapping)

    def resolve(self, class_id, subject_id, semester, academic_year):
        return self.mapping.get((class_id, subject_id, semester, academic_year))


class ConfigurationResolver:
    """Tries each resolver in order; the first non-None answer wins."""

    def __init__(self, resolvers=None):
        if resolvers is None:
            resolvers = [TeacherConfigResolver(), AcademicYearDefaultResolver(), SystemDefaultResolver()]
        self.resolvers = list(resolvers)

    def resolve(self, class_id, subject_id, semester, academic_year):
        for resolver in self.resolvers:
            resolved = resolver.resolve(class_id, subject_id, semester, academic_year)
            if resolved is not None:
                return resolved
        return AssessmentConfig.system_default()

    def preload(self, scopes):
        """
        Resolve every (class, subject, semester, year) tuple now and return a
        resolver that answers from memory. Used before handing work to batch
        worker threads so they never query the database.
        """
        mapping = {scope: self.resolve(*scope) for scope in set(scopes)}
        return ConfigurationResolver([StaticConfigResolver(mapping), SystemDefaultResolver()])
