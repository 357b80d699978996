"""Test helpers package for shared database assertions."""

from tests.helpers.db import ledger_names, table_exists

__all__ = [
    "ledger_names",
    "table_exists",
]
