"""gateway/ -- Edge service: verifies inbound credentials and proxies downstream.

Edge Verifier (verifier.py), Identity Propagator (transforms.py) and the
reverse proxy client (proxy.py), assembled into a FastAPI app in main.py.

Layer rule: gateway/ may import from auth/ (tokens, models), core/ and the
wire models in api/models.py. It never touches the credential store.
"""
