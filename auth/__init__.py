"""auth/ -- Identity providers, credential storage and the authentication resolver.

Layer rule: auth/ imports from core/, devices/ and third-party libraries.
devices/ never imports from auth/. Only auth/dependencies.py imports fastapi.
"""
