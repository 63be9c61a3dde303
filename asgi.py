"""
asgi.py -- Application assembly for authgate.

Two independent ASGI apps live in this repository and are deployed as two
processes:

  app      -- the auth service (api/main.py): sessions and token validation
  gateway  -- the edge service (gateway/main.py): verification + reverse proxy

Run with:  uvicorn asgi:app --port 8000
           uvicorn asgi:gateway --port 8080

api/ and gateway/ never import each other's application modules; only this
file sees both.
"""

from api.main import app
from gateway.main import app as gateway

__all__ = ["app", "gateway"]
