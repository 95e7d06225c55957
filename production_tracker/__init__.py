import os
import click
from flask import Flask
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        SQLALCHEMY_DATABASE_URI=os.environ.get(
            "DATABASE_URL", "sqlite:///" + os.path.join(app.instance_path, "production.sqlite3")
        ),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        BROADCAST_QUEUE_SIZE=int(os.environ.get("BROADCAST_QUEUE_SIZE", "100")),
        SSE_KEEPALIVE_SECONDS=float(os.environ.get("SSE_KEEPALIVE_SECONDS", "15")),
        LOG_LEVEL=os.environ.get("LOG_LEVEL", "INFO"),
    )
    if test_config:
        app.config.from_mapping(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.logger.setLevel(app.config["LOG_LEVEL"])
    db.init_app(app)

    # --- lightweight schema upgrade for SQLite: ensure 'version' on tracked_unit ---
    from sqlalchemy import inspect, text as sql_text
    with app.app_context():
        try:
            insp = inspect(db.engine)
            if insp.has_table('tracked_unit'):
                cols = [c['name'] for c in insp.get_columns('tracked_unit')]
                if 'version' not in cols:
                    with db.engine.begin() as conn:
                        conn.execute(sql_text('ALTER TABLE tracked_unit ADD COLUMN version INTEGER NOT NULL DEFAULT 1'))
        except Exception as e:
            app.logger.info(f'Schema check skipped/failed: {e}')

    from .models import TrackedUnit  # noqa
    from .broadcaster import Broadcaster
    from .coordinator import ProductionTracker
    from .store import TrackingStore
    from .transitions import TransitionEngine

    # one broadcaster per application, shared by every request through the tracker
    broadcaster = Broadcaster(queue_size=app.config["BROADCAST_QUEUE_SIZE"])
    app.extensions["production_tracker"] = ProductionTracker(
        store=TrackingStore(db.session),
        engine=TransitionEngine(),
        broadcaster=broadcaster,
    )

    from .views import bp as main_bp, api as api_bp
    app.register_blueprint(main_bp)
    app.register_blueprint(api_bp)

    @app.cli.command("db-init")
    def db_init():
        with app.app_context():
            db.create_all()
            print("Initialized DB at", app.config["SQLALCHEMY_DATABASE_URI"])

    @app.cli.command("schedule-batch")
    @click.argument("batch_id")
    @click.argument("serials", nargs=-1, required=True)
    @click.option("--employee", default=None, help="Employee scheduling the batch")
    def schedule_batch(batch_id, serials, employee):
        with app.app_context():
            units = TrackingStore(db.session).create_units(batch_id, serials, employee_id=employee)
            print(f"Scheduled {len(units)} units for batch {batch_id}")

    return app
