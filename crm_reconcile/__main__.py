"""
Entry point for running crm_reconcile as a module.

Usage:
    python -m crm_reconcile --help
    python -m crm_reconcile sync --dry-run
    python -m crm_reconcile sync-record 51234
"""

from crm_reconcile.cli import cli

if __name__ == "__main__":
    cli()
