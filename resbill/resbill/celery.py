""" When you run Celery workers, "celery -A resbill worker -l info"
    and the sweeps with "celery -A resbill beat -l info" """
from __future__ import annotations
import os
from celery import Celery

# ensure Django settings are set for Celery
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "resbill.settings")

celery_app = Celery("resbill")

# read config from Django settings, using CELERY_ prefix
celery_app.config_from_object("django.conf:settings", namespace="CELERY")

# autoload tasks from installed apps
celery_app.autodiscover_tasks()
