"""auth/ -- Credential, token, persistence, and provider primitives for Storefront Identity.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, identity/, or cache/.
identity/ and api/ import from auth/, not the other way around.
"""
