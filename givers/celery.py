import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "givers.settings")

app = Celery("givers")

# CELERY_* in settings: broker, routes for the milestone queue, beat sweep
app.config_from_object("django.conf:settings", namespace="CELERY")

# picks up donations.tasks
app.autodiscover_tasks()
