"""
Flask-Migrate / Alembic and WSGI entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-workflows
    flask --app wsgi run-job sla_breach_sweep
    flask --app wsgi run-due-jobs          # cron, every 5 minutes
    gunicorn wsgi:app
"""

from caseflow import create_app

app = create_app()
