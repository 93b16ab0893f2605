import os
from flask import Flask, jsonify
from dotenv import load_dotenv

import config
from clock import SystemClock
from document_store import DocumentStore
from extensions import build_engine, build_session_factory, init_db
from identifiers import IdentifierRegistry
from lifecycle import LifecycleCoordinator
from migration import MigrationEngine
from notifications import build_notifier
from routes import api

load_dotenv()


def create_app(database_url=None, clock=None, notifier=None, rng=None, migration_options=None):
    """Build the Flask app with its store, coordinator and migration engine."""
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "your-secret-key-change-in-production")
    app.config["DATABASE_URL"] = database_url or config.DATABASE_URL

    engine = build_engine(app.config["DATABASE_URL"])
    init_db(engine)
    db_session = build_session_factory(engine)

    clock = clock or SystemClock()
    store = DocumentStore(db_session)
    ids = IdentifierRegistry(clock, rng=rng)
    app.extensions['commerce'] = {
        'engine': engine,
        'db_session': db_session,
        'store': store,
        'ids': ids,
        'clock': clock,
        'coordinator': LifecycleCoordinator(store, ids, clock, notifier or build_notifier()),
        'migrations': MigrationEngine(store, clock, **(migration_options or {})),
    }

    # Register API v1 Blueprint
    app.register_blueprint(api)

    @app.teardown_appcontext
    def shutdown_session(exception=None):
        db_session.remove()

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    return app


if __name__ == "__main__":
    config.configure_logging()
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=os.getenv("FLASK_DEBUG") == "1")
