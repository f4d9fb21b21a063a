"""auth/ -- Authentication, sessions and tenant membership for LicenseGate.

Layer rule: auth/ imports core/, licensing/ (types only) and third-party
libraries. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
