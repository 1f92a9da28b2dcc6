"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    FLASK_APP=wsgi.py flask db upgrade
    FLASK_APP=wsgi.py flask run-worker
"""

from compcycle import create_app

app = create_app()
