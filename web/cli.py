"""
CLI entry point for the Bedrock Orchestrator web server.

Run:  python -m web [--port 8765] [--dir /path/to/project]
"""

import argparse
import logging
import os

from config import app_config, describe_credentials


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Bedrock Orchestrator: web bridge")
    parser.add_argument("--port", type=int, default=8765, help="Server port (default: 8765)")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--dir", action="append", default=[], help="Authorize a folder for the agent (repeatable)")
    parser.add_argument("--data-dir", default=None, help=f"State directory (default: {app_config.data_dir})")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, app_config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    for d in args.dir:
        path = os.path.abspath(os.path.expanduser(d))
        if not os.path.isdir(path):
            print(f"\n  Error: directory not found: {path}\n")
            raise SystemExit(1)
        if path not in app_config.authorized_folders:
            app_config.authorized_folders.append(path)
    if args.data_dir:
        app_config.data_dir = os.path.abspath(os.path.expanduser(args.data_dir))

    print("\n  Bedrock Orchestrator - web bridge")
    print(f"  ws://{args.host}:{args.port}/ws")
    print(f"  State: {app_config.data_dir}")
    print(f"  Credentials: {describe_credentials()}")
    for path in app_config.authorized_folders:
        print(f"  Authorized: {path}")
    print()

    # uvicorn's log_level only affects its own loggers
    web_log = logging.getLogger("web")
    web_log.setLevel(logging.INFO)
    if not web_log.handlers:
        h = logging.StreamHandler()
        h.setLevel(logging.INFO)
        h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [web] %(message)s"))
        web_log.addHandler(h)
        web_log.propagate = False

    from web import app
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
