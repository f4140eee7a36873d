"""
Brand-scoped document chat backend.

Authentication against an OIDC provider, per-user token lifecycle in a
shared credential store, and per-brand encrypted configuration.
"""

__version__ = "0.1.0"
