"""
Shared trading core: collaborator interfaces, domain types and decimal helpers
used by the trading engine, the ledger updater and the funding processor.
"""
