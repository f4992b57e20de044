"""auth/ -- Authentication and session lifecycle package for the Skillmap gateway.

Layer rule: auth/ imports stdlib, third-party libraries, core/ (configuration)
and cache/ (the key-value store). It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
