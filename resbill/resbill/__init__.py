# Load the Celery app with Django so shared_task binds to it
# (workers and beat both start from "celery -A resbill ...")
from .celery import celery_app

__all__ = ("celery_app",)
