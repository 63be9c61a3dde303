"""
core/logging.py -- One logging setup shared by the auth service, the gateway
and the operator CLI.

Every module logs through a named logger under the "authgate" namespace
(authgate.auth, authgate.store, authgate.gateway, ...) so operators can tune
verbosity per component with standard logging configuration.

Never log secrets: passwords, refresh-token values and access tokens stay out
of every log line. Log user ids and outcomes instead.
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    """Install the root handler once. Later calls only adjust the level."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, datefmt=DATE_FORMAT)
    logging.getLogger("authgate").setLevel(level.upper())
