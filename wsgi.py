"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db init       # first time only (creates migrations/)
    flask db migrate -m "description"
    flask db upgrade
    flask seed-ffe-templates
    flask merge-duplicate-stages
"""

from roomflow import create_app

app = create_app()
