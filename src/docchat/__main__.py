"""CLI entrypoint for docchat."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from importlib import metadata

import uvicorn

from .app import DocChatApp
from .billing import build_app_from_config
from .config import ensure_config_dir, load_config
from .logging_utils import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docchat",
        description="docchat - chat with your documents and serve the billing webhook",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    subparsers = parser.add_subparsers(dest="command")

    chat_parser = subparsers.add_parser("chat", help="Open a document conversation")
    chat_parser.add_argument("file_id", help="Identifier of the uploaded document")

    serve_parser = subparsers.add_parser("serve", help="Run the Stripe webhook server")
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Ensure configuration exists, handle CLI flags, and dispatch a subcommand."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("docchat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"docchat {version}")
        return

    if args.command is None:
        parser.print_help()
        return

    ensure_config_dir()
    config = load_config()

    if args.command == "chat":
        app = DocChatApp(args.file_id, config=config)
        app.run()
        return

    configure_logging(config["logging"])
    server_cfg = config["server"]
    uvicorn.run(
        build_app_from_config(config),
        host=args.host or str(server_cfg["host"]),
        port=args.port or int(server_cfg["port"]),
        log_config=None,
    )


if __name__ == "__main__":
    main()
