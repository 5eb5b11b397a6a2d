"""
CLI entry point for the review server.

Run:  python -m web [--port 8765] [--dir /path/to/repo]
"""

import argparse
import logging
import os

from config import app_config, get_credentials_info, model_config


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description=f"{app_config.title} server")
    parser.add_argument("--port", type=int, default=app_config.port, help=f"Server port (default: {app_config.port})")
    parser.add_argument("--host", default=app_config.host, help=f"Server host (default: {app_config.host})")
    parser.add_argument("--dir", default=app_config.working_directory, help="Repository to review by default")
    args = parser.parse_args()

    working_directory = os.path.abspath(os.path.expanduser(args.dir))
    if not os.path.isdir(working_directory):
        print(f"\n  Error: directory not found: {working_directory}\n")
        raise SystemExit(1)

    print(f"\n  {app_config.title}")
    print(f"  http://{args.host}:{args.port}/api/review")
    print(f"  Repository: {working_directory}")
    print(f"  Model: {model_config.model_string}")
    if model_config.model_string.startswith("bedrock:"):
        print(f"  {get_credentials_info()}")
    print()

    # uvicorn's log_level only affects its own loggers
    logging.basicConfig(
        level=app_config.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    from web import create_app
    from web.state import ServerState
    app = create_app(ServerState(working_directory=working_directory))
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
