"""Command line: `python -m bagvo_orders serve` or `python -m bagvo_orders seed`."""

import argparse
import sys

import uvicorn

from . import config


def cmd_serve(args: argparse.Namespace) -> int:
    uvicorn.run(
        "bagvo_orders.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )
    return 0


def cmd_seed(args: argparse.Namespace) -> int:
    from . import seed

    seed.main()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bagvo-orders", description="Storefront order service")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=config.HOST)
    serve.add_argument("--port", type=int, default=config.PORT)
    serve.add_argument("--reload", action="store_true", help="Restart on code changes")

    subparsers.add_parser("seed", help="Load the sample catalog and coupons")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    commands = {
        "serve": cmd_serve,
        "seed": cmd_seed,
    }
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
