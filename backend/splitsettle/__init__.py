from __future__ import annotations

import logging

from flask import Flask
from flask_cors import CORS

from splitsettle.api.routes import api_bp
from splitsettle.config import Config


def create_app() -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    CORS(app)  # ok for MVP; tighten later

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # UnresolvedIdentityWarning and friends end up in the log
    logging.captureWarnings(True)

    app.register_blueprint(api_bp)
    return app
