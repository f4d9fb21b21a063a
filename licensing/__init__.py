"""licensing/ -- Entitlement store, resolver, quota accountant and lifecycle manager.

Layer rule: licensing/ imports only core/ and third-party libraries.
It does NOT import from api/ or auth/. api/ wires licensing/ and auth/
together; neither of them imports the other.
"""
