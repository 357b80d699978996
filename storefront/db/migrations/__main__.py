"""Entry point for running migrations as a module.

Usage:
    python -m storefront.db.migrations migrate
    python -m storefront.db.migrations rollback 0003_orders
    python -m storefront.db.migrations status
    python -m storefront.db.migrations create add_gift_wrapping
"""

from .cli import main

if __name__ == "__main__":
    main()
