"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi run-job kyc_status_poll
    gunicorn wsgi:app
"""

from courier_onboarding import create_app

app = create_app()
