#!/usr/bin/env python3
"""RCON credential tester.

Usage:
  python rcon_check.py <host> [port] [password]

The password falls back to RCON_PASSWORD.

Example:
  python rcon_check.py 203.0.113.10 27015 hunter2
"""
import sys
import time

from config import get_env
from rcon_client import AuthFailed, RconError, check_rcon


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print("Usage: python rcon_check.py <host> [port] [password]")
        return 2

    host = argv[0]
    try:
        port = int(argv[1]) if len(argv) >= 2 else 27015
    except ValueError:
        print(f"Invalid port: {argv[1]}")
        return 2
    password = argv[2] if len(argv) >= 3 else get_env("RCON_PASSWORD", "")

    start = time.time()
    try:
        check_rcon((host, port), password)
    except AuthFailed:
        print(f"FAIL: {host}:{port} rejected the RCON password")
        return 1
    except RconError as e:
        print(f"FAIL: could not authenticate to {host}:{port}: {e}")
        return 1
    elapsed = time.time() - start
    print(f"SUCCESS: authenticated to {host}:{port} (took {elapsed:.2f}s)")
    return 0


if __name__ == '__main__':
    sys.exit(main())
