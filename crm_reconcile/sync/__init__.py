"""
crm_reconcile.sync - Synchronization and reconciliation engine

Paginator, normalizer, reconciler, bulk writer and fan-out driver, plus the
ReconciliationEngine that orchestrates them.
"""
