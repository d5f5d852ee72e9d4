"""tenancy/ -- Organizations (tenants), subscriptions and plans.

Layer rule: tenancy/ imports only core/ + third-party libraries. auth/ may
read from tenancy/ to populate a Subject's organization; tenancy/ never
imports from auth/ or api/.
"""
