"""auth/ -- Authentication and authorization package for campusgate.

Credentials, tokens, the authentication gate, the policy engine and the
one-shot account flows.

Layer rule: auth/ imports from core/ and tenancy/ (the gate and the policy
engine read tenants), never from api/.
api/ imports from auth/, not the other way around.
"""
