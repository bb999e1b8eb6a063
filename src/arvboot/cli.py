#!/usr/bin/env python3
"""
arvboot command line: boot a cluster from a source tree and keep it running.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import Config, load_config
from .config_constants import CLUSTER_TYPES
from .errors import BootError
from .logging_utils import configure_logging
from .supervisor import Supervisor

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = '/etc/arvados/config.toml'


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    """
    Parse command-line arguments for arvboot.

    Supports arguments:
    1. --config <path> - Config file, repeatable; later files win
    2. --type <type> - Cluster type: production, development or test
    3. --source <path> - Arvados source tree (default: current directory)
    4. --listen-host <host> - Host for autofilled service URLs
    5. --controller-address <host:port> - Controller external address
    6. --own-temporary-database - Run a throwaway PostgreSQL server
    7. --log-level <level> - Log level before the config is read
    """
    parser = argparse.ArgumentParser(
        description='arvboot: run an Arvados cluster from a source tree',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Test cluster with its own database
  %(prog)s --type test --own-temporary-database --config ./config.toml

  # Development cluster reachable from other hosts
  %(prog)s --type development --listen-host 0.0.0.0 --controller-address 0.0.0.0:8000
        '''
    )

    parser.add_argument(
        '--config',
        action='append',
        type=Path,
        default=None,
        metavar='PATH',
        help=f'Config file; repeat to merge several (default: {DEFAULT_CONFIG})'
    )

    parser.add_argument(
        '--type',
        choices=CLUSTER_TYPES,
        default='production',
        help='Cluster type (default: production)'
    )

    parser.add_argument(
        '--source',
        type=Path,
        default=Path('.'),
        metavar='PATH',
        help='Arvados source tree (default: current directory)'
    )

    parser.add_argument(
        '--listen-host',
        default='localhost',
        metavar='HOST',
        help='Host name/address for autofilled service URLs (default: localhost)'
    )

    parser.add_argument(
        '--controller-address',
        default=':0',
        metavar='HOST:PORT',
        help='Controller external address; port 0 picks a free port (default: :0)'
    )

    parser.add_argument(
        '--own-temporary-database',
        action='store_true',
        help='Start a temporary PostgreSQL server instead of using the configured one'
    )

    parser.add_argument(
        '--log-level',
        default='INFO',
        metavar='LEVEL',
        help='Log level until the cluster config takes over (default: INFO)'
    )

    args = parser.parse_args(argv)
    if not args.config:
        args.config = [Path(DEFAULT_CONFIG)]
    return args


async def _boot(supervisor: Supervisor, cfg: Config) -> None:
    await supervisor.start(cfg)
    url = await supervisor.wait_ready()
    if url is not None:
        print(url, flush=True)
    await supervisor.done()


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(*args.config)
        supervisor = Supervisor(
            source_path=str(args.source),
            cluster_type=args.type,
            listen_host=args.listen_host,
            controller_addr=args.controller_address,
            own_temporary_database=args.own_temporary_database,
            stderr=sys.stderr,
        )
        asyncio.run(_boot(supervisor, cfg))
    except BootError as e:
        logger.error(f"{e}")
        return 1
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
