"""CLI package for crm_reconcile."""

from crm_reconcile.cli.formatters import (
    show_fanout_report,
    show_investigations,
    show_list_audits,
    show_quarantine,
    show_record_result,
    show_run_report,
)
from crm_reconcile.cli.main import (
    build_engine,
    cli,
    get_config_dir,
    get_db_path,
)

__all__ = [
    "build_engine",
    "cli",
    "get_config_dir",
    "get_db_path",
    "show_fanout_report",
    "show_investigations",
    "show_list_audits",
    "show_quarantine",
    "show_record_result",
    "show_run_report",
]
