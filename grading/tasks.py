"""
Celery tasks for the grading app.
Runs class and config-scope recalculations in the background.
"""
import logging
import uuid

from celery import shared_task
from django.db import OperationalError

from . import config


logger = logging.getLogger(__name__)

# Transient errors that should trigger retry
RETRYABLE_EXCEPTIONS = (OperationalError, ConnectionError, TimeoutError)


def _as_uuid(value):
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@shared_task(
    bind=True,
    max_retries=config.TASK_MAX_RETRIES,
    default_retry_delay=config.TASK_RETRY_DELAY,
)
def calculate_class_averages_task(self, class_id, semester, academic_year):
    """
    Recalculate every student of a class for one semester.

    Args:
        class_id: UUID (or its string form) of the class
        semester: 1 or 2
        academic_year: e.g. '2024-2025'

    Retries with exponential backoff when the database is unavailable.
    Failed student chains do not fail the task; they are listed in the result.
    """
    from .services import get_service

    try:
        batch = get_service().calculate_class_averages(_as_uuid(class_id), int(semester), academic_year)
    except RETRYABLE_EXCEPTIONS as e:
        logger.warning(f"Retryable error recalculating class {class_id}: {str(e)}")
        raise self.retry(exc=e, countdown=config.TASK_RETRY_DELAY * (2 ** self.request.retries))

    summary = batch.as_dict()
    summary['success'] = batch.ok
    return summary


@shared_task(
    bind=True,
    max_retries=config.TASK_MAX_RETRIES,
    default_retry_delay=config.TASK_RETRY_DELAY,
)
def recalculate_config_scope_task(self, academic_year, class_id=None, subject_id=None, semester=None):
    """
    Recalculate everything computed under an assessment config scope.

    Returns:
        dict with one summary per recalculated class
    """
    from .services import get_service

    try:
        batches = get_service().on_config_changed(
            academic_year,
            class_id=_as_uuid(class_id),
            subject_id=_as_uuid(subject_id),
            semester=int(semester) if semester is not None else None,
        )
    except RETRYABLE_EXCEPTIONS as e:
        logger.warning(f"Retryable error recalculating config scope for {academic_year}: {str(e)}")
        raise self.retry(exc=e, countdown=config.TASK_RETRY_DELAY * (2 ** self.request.retries))

    return {
        'success': all(batch.ok for batch in batches),
        'academic_year': academic_year,
        'classes': [batch.as_dict() for batch in batches],
    }
