"""auth/ -- Admin identity and access package for nestguard.

Layer rule: auth/ imports from core/, cache/ and third-party libraries.
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around.
"""
