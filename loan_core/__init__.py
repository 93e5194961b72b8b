"""
Loan Management Core

Dual-direction loan ledger with a status state machine, payment recording,
an atomic approval workflow and ledger-derived dashboard reporting.
"""

__version__ = "1.0.0"
