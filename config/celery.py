import os

from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('config')

# Read CELERY_* settings from Django settings
app.config_from_object('django.conf:settings', namespace='CELERY')

# Picks up grading/tasks.py
app.autodiscover_tasks()
