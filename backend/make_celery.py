# backend/make_celery.py
# Celery entry point: celery -A make_celery worker --loglevel=info
from warranty import create_app

flask_app = create_app()
celery_app = flask_app.extensions["celery"]
