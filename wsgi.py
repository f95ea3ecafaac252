"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade
    flask run-job review_auto_approval
    gunicorn wsgi:app
"""

from tourlink import create_app

app = create_app()
