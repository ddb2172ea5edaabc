"""audit/ -- Append-only audit trail for privileged actions.

Layer rule: audit/ imports only stdlib, third-party libraries and core/.
It does NOT import from auth/ or api/; auth/ calls into audit/ through
AuditRecorder.record(), never the other way around.
"""
