"""auth/ -- Principals, credentials, sessions and consent orchestration for Rollcall.

Layer rule: auth/ imports only core/ + third-party libraries.
It does NOT import from api/, web/, classes/, or bus/.
api/ and web/ import from auth/, not the other way around.
"""
