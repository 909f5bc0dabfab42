"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi sync-hierarchy
"""

from kpi_dashboard import create_app

app = create_app()
