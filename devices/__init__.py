"""devices/ -- Per-user device and session tracking.

Layer rule: devices/ imports from core/ and third-party libraries only.
It does NOT import from auth/. auth/resolver.py calls into devices/, not the
other way around.
"""
