"""auth/ -- Credential & session lifecycle package for TaskNest.

Layer rule: the stores and ledgers (store, ledger, invites, tokens, schema)
import only stdlib + third-party libraries and each other. sessions.py is
the composition point and may also import audit/ and core/.
It does NOT import from api/; api/ imports from auth/, not the other way around.
"""
