"""
Agent Wallet

Permission reconciliation engine for a scoped, revocable agent capability on
a smart-account relay.
"""

__version__ = "0.3.0"
