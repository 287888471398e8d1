import logging
from typing import Optional

from flask import Flask
from conveyor.routes import main_bp
from conveyor.api.routes_pipelines import pipelines_bp
from conveyor.config import Config
from conveyor.events import EventBus
from conveyor.pipeline.executor import PipelineExecutor
from conveyor.pipeline.loader import PipelineLoader, PipelineRegistry
from conveyor.sse.stream import SSEManager


def create_app(config: Optional[type] = None, executor: Optional[PipelineExecutor] = None) -> Flask:
    config = config or Config

    app = Flask(__name__)
    app.config.from_object(config)
    config.init_app(app)

    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app.sse_manager = SSEManager()
    if executor is None:
        executor = PipelineExecutor.from_config(config, event_bus=EventBus(sse_manager=app.sse_manager))
    else:
        executor.event_bus.sse_manager = app.sse_manager
    app.pipeline_executor = executor
    app.pipeline_registry = PipelineRegistry(PipelineLoader(config.PIPELINES_DIR))

    app.register_blueprint(main_bp)
    app.register_blueprint(pipelines_bp)

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(debug=True, host="0.0.0.0", port=7766)
