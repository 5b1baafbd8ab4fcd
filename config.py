"""
Service configuration.

Defaults live here as module constants; the command line overrides them via
add_arguments()/ServiceConfig.from_args().
"""

import argparse
from dataclasses import dataclass
from typing import Optional

from fsm import ConfigurationError

DEFAULT_STORE_TIMEOUT_SECONDS = 5.0
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class ServiceConfig:
    """
    Settings for build_order_service().

    Attributes:
        database_path: SQLite file; None keeps orders in memory
        store_timeout: Seconds a store call may wait on a busy database
        lock_timeout: Seconds an event may wait for another event on the same order
        require_payment_confirmation: Reject PAY without a confirmation number
        audit_csv: Write the audit trail here on shutdown (CLI only)
        verbose: Debug logging
    """
    database_path: Optional[str] = None
    store_timeout: float = DEFAULT_STORE_TIMEOUT_SECONDS
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    require_payment_confirmation: bool = False
    audit_csv: Optional[str] = None
    verbose: bool = False

    def __post_init__(self):
        if self.store_timeout <= 0:
            raise ConfigurationError(f"store_timeout must be positive, got {self.store_timeout}")
        if self.lock_timeout <= 0:
            raise ConfigurationError(f"lock_timeout must be positive, got {self.lock_timeout}")

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "ServiceConfig":
        return cls(
            database_path=args.db,
            store_timeout=args.store_timeout,
            lock_timeout=args.lock_timeout,
            require_payment_confirmation=args.require_confirmation,
            audit_csv=args.audit_csv,
            verbose=args.verbose,
        )


def add_arguments(parser: argparse.ArgumentParser) -> None:
    """Add the service options to parser."""
    parser.add_argument('--db', type=str, default=None, metavar='PATH',
                        help='SQLite database file (default: in-memory store)')
    parser.add_argument('--store-timeout', type=float, default=DEFAULT_STORE_TIMEOUT_SECONDS,
                        metavar='SECONDS',
                        help=f'Database busy timeout (default: {DEFAULT_STORE_TIMEOUT_SECONDS})')
    parser.add_argument('--lock-timeout', type=float, default=DEFAULT_LOCK_TIMEOUT_SECONDS,
                        metavar='SECONDS',
                        help=f'Per-order lock timeout (default: {DEFAULT_LOCK_TIMEOUT_SECONDS})')
    parser.add_argument('--require-confirmation', action='store_true',
                        help='Reject payments without a confirmation number')
    parser.add_argument('--audit-csv', type=str, default=None, metavar='PATH',
                        help='Write the state change audit trail to a CSV file')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable debug logging')
