from django.apps import AppConfig


class GradingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'grading'
    verbose_name = 'Grade Aggregation'

    def ready(self):
        # Register grade/config change receivers
        from . import signals  # noqa: F401
