"""Storefront backend database layer.

Connection pooling, SQL schema migrations and the startup bootstrap
for the jewelry storefront and its admin back office.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
