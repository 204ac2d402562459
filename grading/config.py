"""
Engine settings, read from Django settings under a GRADING_ prefix.

    GRADING_BATCH_MAX_WORKERS = 4   # class recalculation on four threads

Values are looked up on every access, so override_settings() in tests and
settings changes after import both take effect.
"""
from decimal import Decimal

PREFIX = 'GRADING_'

_DEFAULTS = {
    # Last resort of the assessment config resolver chain
    'DEFAULT_MONTHLY_EXAM_COUNT': 4,
    'DEFAULT_MONTHLY_WEIGHT': Decimal('50.00'),
    'DEFAULT_SEMESTER_WEIGHT': Decimal('50.00'),

    'PASS_MARK': Decimal('40.00'),

    # Result store
    'CACHE_ALIAS': 'default',
    'CACHE_PREFIX': 'grading',
    'RESULT_CACHE_TIMEOUT': 30 * 60,  # seconds
    'RANKING_CACHE_TIMEOUT': 60 * 60,  # seconds
    'LOCK_STRIPES': 64,

    # 1 runs class chains sequentially
    'BATCH_MAX_WORKERS': 1,

    # Queue config-change recalculation on Celery instead of running it inline
    'ASYNC_RECALCULATION': False,

    'TASK_MAX_RETRIES': 3,
    'TASK_RETRY_DELAY': 60,  # seconds, doubled on each retry
}


class _Settings:

    def __getattr__(self, name):
        try:
            default = _DEFAULTS[name]
        except KeyError:
            raise AttributeError(f"Unknown grading setting: {name}") from None
        from django.conf import settings
        return getattr(settings, f'{PREFIX}{name}', default)


_settings = _Settings()


def __getattr__(name):
    return getattr(_settings, name)
