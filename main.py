#!/usr/bin/env python3
"""
Rollcall -- accounts, classes and OAuth2 consent for a classroom platform.

Usage:
  python main.py serve
  python main.py serve --addr 0.0.0.0:8080
  python main.py serve --dry
  python main.py serve --reload

Configuration comes from the environment or a .env file (see core/config.py).
--dry keeps everything in a scratch SQLite file that is removed on exit and
logs bus messages instead of publishing them, so nothing outside the process is
touched except the authorization server.
"""

import argparse
import os
import sys


def _parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise argparse.ArgumentTypeError(f"'{addr}' is not a HOST:PORT address")
    return host or "127.0.0.1", int(port)


def serve(args: argparse.Namespace) -> int:
    import uvicorn

    if args.dry:
        # Must be set before core.config.get_settings() first runs.
        os.environ["DRY_RUN"] = "true"

    host, port = args.addr
    print(f"\nRollcall listening on http://{host}:{port}" + (" (dry run)" if args.dry else ""))
    uvicorn.run("asgi:app", host=host, port=port, reload=args.reload, log_level=args.log_level)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="rollcall",
        description="Accounts, classes and OAuth2 consent service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve
  python main.py serve --addr 0.0.0.0:8080
  SECRET_KEY=... HYDRA_URL=http://hydra:4445 python main.py serve
  DEBUG=true python main.py serve --dry
        """,
    )
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the HTTP server")
    p_serve.add_argument(
        "--addr",
        type=_parse_addr,
        default=("127.0.0.1", 8080),
        metavar="HOST:PORT",
        help="Address to listen on (default: 127.0.0.1:8080)",
    )
    p_serve.add_argument(
        "--dry",
        action="store_true",
        help="Use a throwaway database and a log-only message bus",
    )
    p_serve.add_argument(
        "--reload",
        action="store_true",
        help="Restart on code changes (development only)",
    )
    p_serve.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="uvicorn log level (default: info)",
    )
    p_serve.set_defaults(func=serve)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
