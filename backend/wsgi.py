# backend/wsgi.py
from warranty import create_app

app = create_app()
