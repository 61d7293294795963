"""auth/ -- Authentication and account-security engine for LocalBite.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/. api/ imports from auth/, not the other way
around. auth/dependencies.py is the one module that knows about FastAPI,
because it plugs into FastAPI's dependency injection.
"""
