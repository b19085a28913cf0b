"""
tenantdb Test Suite

Unit tests cover each module in isolation; integration tests run the
engine against the in-memory backend with two tenants sharing one store.
"""
