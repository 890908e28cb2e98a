"""
caseflow — SQLAlchemy models package.

The shared ``db`` handle lives here so every model module and service can do
``from caseflow.models import db`` without importing the app factory.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
