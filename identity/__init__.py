"""identity/ -- User directory, token issuance, and session orchestration.

Layer rule: identity/ imports from auth/, cache/, and core/.
It does NOT import from api/. api/ builds these services in the lifespan and
hands them to route handlers through app.state.
"""
