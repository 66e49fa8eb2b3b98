"""
Roomflow
Model package — shared Flask-SQLAlchemy handle.

Every model module imports ``db`` from here; ``create_app`` imports each
module once so the metadata is complete before ``db.create_all()``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
