"""
Roomflow application factory.

    from roomflow import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from roomflow.config import config
from roomflow.middleware.logging_config import configure_logging
from roomflow.models import db

logger = logging.getLogger(__name__)

migrate = Migrate()


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """Build the Flask app for ``config_name`` (development/testing/production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)

    # model modules register their tables on db.metadata
    from roomflow.models import change_log, ffe, org, stage  # noqa: F401

    with app.app_context():
        _prepare_sqlite_file(app)
        try:
            db.create_all()
        except Exception as exc:
            app.logger.warning("Table creation skipped: %s", exc)

    _register_cli(app)
    return app


def _prepare_sqlite_file(app):
    uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if uri.startswith("sqlite:///") and ":memory:" not in uri:
        os.makedirs(app.instance_path, exist_ok=True)


def _register_cli(app):
    @app.cli.command("seed-ffe-templates")
    def seed_ffe_templates_cmd():
        """Give every organisation without templates the built-in set."""
        from roomflow.models.ffe import FFETemplate
        from roomflow.models.org import Organization
        from roomflow.services.template_service import seed_default_templates

        seeded = 0
        for organization in Organization.query.order_by(Organization.id):
            if FFETemplate.query.filter_by(org_id=organization.id).count():
                continue
            seeded += seed_default_templates(organization.id, actor="cli")
        db.session.commit()
        logger.info("Seeded %d FFE templates", seeded)

    @app.cli.command("merge-duplicate-stages")
    def merge_duplicate_stages_cmd():
        """Collapse duplicate room stages; legacy DESIGN folds into DESIGN_CONCEPT."""
        from roomflow.services.stage_merger import run_duplicate_stage_cleanup

        report = run_duplicate_stage_cleanup(apply=True)
        logger.info(
            "Stage cleanup: groups=%d removed=%d sections_moved=%d conflicts=%d index=%s",
            report["groups_found"], report["stages_removed"],
            report["sections_reassigned"], len(report["conflicts"]),
            report["unique_index_installed"],
        )
