"""
Bank Sync Module

Pulls transaction history from banking providers into the local ledger:
- providers: Provider interface, Akahu adapter and factory
- matching_rules: Duplicate detection against the local ledger
- services: Orchestration, mapping, categorization, balance reconciliation, review
- workers: Background sync runner
- endpoints: REST API
"""
