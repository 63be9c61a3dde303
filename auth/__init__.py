"""auth/ -- Session lifecycle domain for authgate.

Token Issuer (tokens.py), Credential Store (store.py) and Session
Orchestrator (sessions.py), plus the models, errors and password helpers they
share.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or gateway/.
api/ and gateway/ import from auth/, not the other way around.
"""
