"""auth/ -- Credential and session lifecycle core for Gatekeeper.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ and the CLI import from auth/, not the
other way around.
"""
