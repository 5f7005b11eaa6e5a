"""
Recurring Expense Engine - Source Package

Projects recurring obligations into dated bill instances, reconciles
incoming transactions against them, splits every bill across the
founders and keeps the template/rule registries free of duplicates.

DESIGN PRINCIPLES:
1. Generation is idempotent: re-running never duplicates a bill
2. Splits always sum to the bill amount, to the cent
3. "No match" is a normal outcome, not an error
4. Detection and mutation never share a codepath
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Recurring Expense Engine Team"
