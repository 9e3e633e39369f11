import os
import logging
from logging.config import dictConfig
import json
from typing import Optional


def configure_logging(debug: Optional[bool] = None) -> None:
    """Set up process logging for the command line tool.

    A JSON ``dictConfig`` file named by LOGGING_CONFIG_FILE takes precedence.
    Otherwise records go to stderr at INFO, or DEBUG when ``debug`` is set or
    DEBUG=true is in the environment.
    """
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")
    if logging_config_file:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    if debug is None:
        debug = os.getenv("DEBUG", "").lower() == "true"

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)
