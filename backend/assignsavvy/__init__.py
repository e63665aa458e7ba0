"""
AssignSavvy - Credits Backend
=============================

Credit metering and plan entitlement for the AssignSavvy writing tools
(writer, researcher, detector, prompt optimizer).

Scope:
- Plan registry (freemium / pro / custom) and word-to-credit pricing
- Atomic reserve / commit / rollback against a user's credit balance
- Monthly usage aggregation
- Pre-flight plan validation
- Scheduled and webhook-driven credit allocation

BALANCE RULES:
- Every balance mutation goes through the credit ledger
- A reservation ends in exactly one of committed / rolled_back
- Balances are never written negative
"""

__version__ = "1.0.0"
__product__ = "AssignSavvy"
