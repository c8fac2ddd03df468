import logging

from flask import Flask

from .config.settings import load_config
from .controllers.api_controller import api_blueprint


def create_app(config_name: str = "development") -> Flask:
    app = Flask(__name__)
    app.config.from_mapping(load_config(config_name))

    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app.register_blueprint(api_blueprint, url_prefix="/api")

    return app
