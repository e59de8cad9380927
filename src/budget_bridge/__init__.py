"""
Bank → Categorization → Budget submission pipeline.

Imports bank transactions into an immutable local ledger, assigns payees and
categories through approved cleanup rules with an AI fallback, and submits the
categorized transactions to an external budgeting service exactly once.
"""

__version__ = "0.1.0"
