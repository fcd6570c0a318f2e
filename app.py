"""Application entry point for the dog walking dashboard API."""

import logging

from dogwalking import config
from dogwalking.webapp import create_app

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
