"""
Courier Onboarding Engine
SQLAlchemy models package.

``db`` is the single Flask-SQLAlchemy handle; every model module imports it
from here and ``create_app`` binds it to the application.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
