"""
Signals for automatic recalculation when grades or assessment configs change.

When a Grade is saved or deleted, every average derived from it is brought up
to date and the affected rankings are rebuilt. When an assessment config is
saved or deleted, everything computed under it is recalculated (inline, or
through Celery when GRADING_ASYNC_RECALCULATION is on).

The engine announces its own work with two custom signals:
    average_calculated(sender, result)  after each stored CalculationResult
    rankings_rebuilt(sender, ranking)   after each rebuilt Ranking
"""
import logging
import threading

from django.db import transaction
from django.db.models.signals import post_save, post_delete
from django.dispatch import Signal, receiver

from . import config
from .models import Grade, TeacherAssessmentConfig, DefaultAssessmentConfig

logger = logging.getLogger(__name__)

average_calculated = Signal()
rankings_rebuilt = Signal()

_state = threading.local()


def _is_signals_disabled():
    return getattr(_state, 'depth', 0) > 0


class signals_disabled:
    """
    Suspend automatic recalculation in the current thread, e.g. around a bulk
    grade import followed by one calculate_class_averages() call. Nests.
    """

    def __enter__(self):
        _state.depth = getattr(_state, 'depth', 0) + 1
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _state.depth -= 1
        return False


def _recalculate_for_grade(grade, removed=False):
    from .services import get_service

    get_service().on_grade_changed(
        student_id=grade.student_id,
        subject_id=grade.subject_id,
        class_id=grade.class_id,
        semester=grade.semester,
        academic_year=grade.academic_year,
        removed=removed,
    )


@receiver(post_save, sender=Grade)
def grade_saved(sender, instance, created, **kwargs):
    """Recalculate the grade's chain and rankings after it is saved."""
    if _is_signals_disabled():
        return
    if kwargs.get('raw', False):
        # Loading fixtures
        return
    _recalculate_for_grade(instance)


@receiver(post_delete, sender=Grade)
def grade_deleted(sender, instance, **kwargs):
    """Recalculate the grade's chain and rankings after it is deleted."""
    if _is_signals_disabled():
        return
    _recalculate_for_grade(instance, removed=True)


def _recalculate_for_config(academic_year, class_id=None, subject_id=None, semester=None):
    scope = dict(academic_year=academic_year, class_id=class_id, subject_id=subject_id, semester=semester)

    if config.ASYNC_RECALCULATION:
        from .tasks import recalculate_config_scope_task

        task_kwargs = {
            name: str(value) if name in ('class_id', 'subject_id') and value is not None else value
            for name, value in scope.items()
        }
        # Queue only once the config row is committed
        transaction.on_commit(lambda: recalculate_config_scope_task.delay(**task_kwargs))
        logger.info(f"Queued config recalculation for {task_kwargs}")
        return

    from .services import get_service
    get_service().on_config_changed(**scope)


@receiver(post_save, sender=TeacherAssessmentConfig)
@receiver(post_delete, sender=TeacherAssessmentConfig)
def teacher_config_changed(sender, instance, **kwargs):
    if _is_signals_disabled() or kwargs.get('raw', False):
        return
    _recalculate_for_config(
        instance.academic_year,
        class_id=instance.class_id,
        subject_id=instance.subject_id,
        semester=instance.semester,
    )


@receiver(post_save, sender=DefaultAssessmentConfig)
@receiver(post_delete, sender=DefaultAssessmentConfig)
def default_config_changed(sender, instance, **kwargs):
    if _is_signals_disabled() or kwargs.get('raw', False):
        return
    _recalculate_for_config(instance.academic_year, semester=instance.semester)
