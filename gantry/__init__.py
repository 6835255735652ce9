from typing import Optional

from flask import Flask


def create_app(config_path: Optional[str] = None, capabilities=None, db_path: Optional[str] = None) -> Flask:
    """
    Build the gantry HTTP service.

    Args:
        config_path: Service configuration YAML (GANTRY_SERVICE_CONFIG when omitted)
        capabilities: Pre-built capabilities (tests); loaded from configuration otherwise
        db_path: SQLite path (GANTRY_DB_PATH when omitted)
    """
    from gantry.api import health_bp, runs_bp
    from gantry.config import Config
    from gantry.config_loader import ConfigLoader, build_engine
    from gantry.database import init_db
    from gantry.database.repositories import RunRepository
    from gantry.events import get_event_bus
    from gantry.services import RunService
    from gantry.sse import SSEManager
    from gantry.strategies import default_router

    app = Flask(__name__)
    app.config.from_object(Config)
    Config.init_app(app)

    database = init_db(db_path or Config.DB_PATH)
    if capabilities is None:
        capabilities = ConfigLoader.build_capabilities(ConfigLoader.load_service_config(config_path))

    event_bus = get_event_bus()
    app.sse_manager = SSEManager()
    event_bus.attach_sse_manager(app.sse_manager)

    engine = build_engine(capabilities, event_bus=event_bus)
    app.run_service = RunService(
        engine,
        default_router(),
        RunRepository(database),
        pipelines=capabilities.pipelines,
        max_concurrent_runs=capabilities.max_concurrent_runs,
    )

    app.register_blueprint(runs_bp)
    app.register_blueprint(health_bp)

    recovered = app.run_service.recover()
    if recovered:
        app.logger.info(f"Recovered {recovered} run(s) from the previous process")
    app.run_service.start(app)

    return app
