"""
Paycycle - payment lifecycle orchestrator

Background processes that poll the crypto settlement provider, turn settled
payments into ledger credit exactly once, track failures and renew
subscriptions.
"""

__version__ = "1.0.0"
