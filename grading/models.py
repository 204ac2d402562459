import uuid
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models

from .results import GradeEntry, SEMESTER_EXAM, monthly_index


SEMESTER_CHOICES = [
    (1, 'Semester 1'),
    (2, 'Semester 2'),
]


def _validate_weight_pair(monthly_weight, semester_weight):
    if monthly_weight is None or semester_weight is None:
        return
    if monthly_weight + semester_weight != Decimal('100'):
        raise ValidationError(
            f'Monthly and semester weights must sum to 100% '
            f'(currently {monthly_weight}% + {semester_weight}%)'
        )


class Grade(models.Model):
    """
    Raw score for one exam slot of a student in a subject.

    Slots are MONTHLY_1..MONTHLY_n (n = configured monthly exam count) or
    SEMESTER_EXAM. Saving or deleting a grade triggers recalculation.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    student_id = models.UUIDField(db_index=True)
    class_id = models.UUIDField(db_index=True)
    subject_id = models.UUIDField(db_index=True)
    semester = models.PositiveSmallIntegerField(choices=SEMESTER_CHOICES)
    academic_year = models.CharField(
        max_length=20,
        help_text='Academic year label (e.g., 2024-2025)'
    )
    exam_slot = models.CharField(
        max_length=30,
        help_text='MONTHLY_1..MONTHLY_n or SEMESTER_EXAM'
    )
    score = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0')), MaxValueValidator(Decimal('100'))],
        help_text='Score as a percentage (0-100)'
    )
    teacher_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.student_id} {self.exam_slot} S{self.semester} {self.academic_year}: {self.score}"

    def clean(self):
        """Validate the exam slot code."""
        if self.exam_slot != SEMESTER_EXAM and monthly_index(self.exam_slot) is None:
            raise ValidationError(
                f'Unknown exam slot "{self.exam_slot}". Use MONTHLY_<n> or {SEMESTER_EXAM}.'
            )

    @property
    def is_semester_exam(self):
        return self.exam_slot == SEMESTER_EXAM

    def to_entry(self):
        """Read-only view handed to the calculation engine."""
        return GradeEntry(
            student_id=self.student_id,
            subject_id=self.subject_id,
            class_id=self.class_id,
            semester=self.semester,
            academic_year=self.academic_year,
            slot=self.exam_slot,
            score=self.score,
        )

    class Meta:
        db_table = 'grading_grade'
        ordering = ['academic_year', 'semester', 'student_id', 'subject_id', 'exam_slot']
        verbose_name = 'Grade'
        verbose_name_plural = 'Grades'
        unique_together = ['student_id', 'class_id', 'subject_id', 'semester', 'academic_year', 'exam_slot']
        indexes = [
            models.Index(fields=['class_id', 'academic_year', 'semester'], name='grade_class_year_sem_idx'),
            models.Index(fields=['student_id', 'academic_year', 'semester'], name='grade_student_year_sem_idx'),
        ]


class TeacherAssessmentConfig(models.Model):
    """
    Teacher override of the assessment configuration for one
    class/subject/semester/academic year.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    teacher_id = models.UUIDField(null=True, blank=True)
    class_id = models.UUIDField()
    subject_id = models.UUIDField()
    semester = models.PositiveSmallIntegerField(choices=SEMESTER_CHOICES)
    academic_year = models.CharField(max_length=20)
    monthly_exam_count = models.PositiveSmallIntegerField(
        default=4,
        validators=[MinValueValidator(1)],
        help_text='Number of monthly exams in the semester'
    )
    monthly_weight = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal('50.00'),
        validators=[MinValueValidator(0), MaxValueValidator(100)],
        help_text='Weight of the monthly average in the semester average (%)'
    )
    semester_weight = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal('50.00'),
        validators=[MinValueValidator(0), MaxValueValidator(100)],
        help_text='Weight of the semester exam in the semester average (%)'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return (
            f"{self.class_id}/{self.subject_id} S{self.semester} {self.academic_year}: "
            f"{self.monthly_exam_count} monthly, {self.monthly_weight}/{self.semester_weight}"
        )

    def clean(self):
        """Validate that the weights sum to 100%."""
        _validate_weight_pair(self.monthly_weight, self.semester_weight)

    class Meta:
        db_table = 'teacher_assessment_config'
        ordering = ['academic_year', 'semester']
        verbose_name = 'Teacher Assessment Config'
        verbose_name_plural = 'Teacher Assessment Configs'
        unique_together = ['class_id', 'subject_id', 'semester', 'academic_year']


class DefaultAssessmentConfig(models.Model):
    """
    Admin default for an academic year. A row without a semester applies to
    both semesters; a semester-specific row takes precedence over it.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    academic_year = models.CharField(max_length=20)
    semester = models.PositiveSmallIntegerField(
        choices=SEMESTER_CHOICES,
        null=True,
        blank=True,
        help_text='Leave empty to apply to the whole academic year'
    )
    monthly_exam_count = models.PositiveSmallIntegerField(
        default=4,
        validators=[MinValueValidator(1)]
    )
    monthly_weight = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal('50.00'),
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    semester_weight = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal('50.00'),
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        semester = f"S{self.semester}" if self.semester else "all semesters"
        return f"Default {self.academic_year} ({semester})"

    def clean(self):
        _validate_weight_pair(self.monthly_weight, self.semester_weight)

    class Meta:
        db_table = 'default_assessment_config'
        ordering = ['academic_year', 'semester']
        verbose_name = 'Default Assessment Config'
        verbose_name_plural = 'Default Assessment Configs'
        unique_together = ['academic_year', 'semester']
