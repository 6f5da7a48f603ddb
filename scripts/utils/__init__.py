"""
Shared utilities for job_analytics scripts.

- cli: Command-line argument parsing, logging setup and console output
"""

from scripts.utils.cli import (
    create_run_parser,
    get_date_range_from_args,
    print_banner,
    print_completion,
    print_step,
    setup_script_logging,
)

__all__ = [
    'create_run_parser',
    'get_date_range_from_args',
    'print_banner',
    'print_completion',
    'print_step',
    'setup_script_logging',
]
