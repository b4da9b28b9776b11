#!/usr/bin/env python3
"""
Cluster Link - Entry Point

Keeps one DX cluster telnet session alive and shares it with local clients.
"""

import os
import sys
from datetime import datetime


if __name__ == "__main__":
    import argparse
    from clusterlink.console import run

    parser = argparse.ArgumentParser(description="Cluster Link")
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Configuration file (default: ~/.clusterlink.json)",
    )
    parser.add_argument(
        "-a",
        "--auto-connect",
        metavar="CLUSTER",
        help="Connect to the named cluster at startup",
    )
    parser.add_argument(
        "-d",
        "--debug",
        nargs="?",
        type=int,
        const=2,
        default=0,
        metavar="LEVEL",
        help="Enable debug mode at startup (optional level 0-6, default: 2)",
    )
    parser.add_argument(
        "-p",
        "--relay-port",
        type=int,
        metavar="PORT",
        help="Local relay server port (default: 7373)",
    )
    parser.add_argument(
        "--no-relay",
        action="store_true",
        help="Do not start the local relay server",
    )
    parser.add_argument(
        "-l",
        "--log",
        nargs="?",
        const="~/.clusterlink.log",
        metavar="FILE",
        help="Log all console output to file (default: ~/.clusterlink.log)",
    )

    args = parser.parse_args()

    if args.relay_port is not None and not 1 <= args.relay_port <= 65535:
        parser.error(f"Invalid relay port {args.relay_port}")

    # Install logging to file if requested
    log_file = None
    if args.log:
        from clusterlink.utils import set_console_log_file

        log_path = os.path.expanduser(args.log)

        # Open log file with rotation
        MAX_LOG_SIZE = 10 * 1024 * 1024  # 10MB
        if os.path.exists(log_path) and os.path.getsize(log_path) > MAX_LOG_SIZE:
            timestamp = datetime.now().strftime('%Y%m%d-%H%M%S')
            backup_path = f"{log_path}.{timestamp}"
            os.rename(log_path, backup_path)
            print(f"Rotated log: {backup_path}", file=sys.stderr)

        log_file = open(log_path, 'a', buffering=1)

        # Set up logging for prompt_toolkit output (print_pt)
        set_console_log_file(log_file)

        print(f"Logging enabled to: {log_path}")

    try:
        run(
            config_file=args.config,
            auto_connect=args.auto_connect,
            auto_debug=args.debug,
            relay_port=args.relay_port,
            relay_enabled=False if args.no_relay else None,
        )
    finally:
        # Close log file if it was opened
        if log_file:
            log_file.close()
