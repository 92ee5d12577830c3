import argparse
import os

import uvicorn

from chatcore import config


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the ChatCore HTTP server")
    parser.add_argument("--host", default=config.HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=config.PORT, help="Bind port")
    parser.add_argument("--db", default=None, help=f"SQLite database path (default: {config.DB_PATH})")
    parser.add_argument(
        "--no-recovery",
        action="store_true",
        help="Do not run the stuck-stream recovery sweep",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=config.RELOAD_ENABLED,
        help="Enable auto-reload for development",
    )
    args = parser.parse_args()

    # Settings are read at import time; the env covers reloader subprocesses,
    # the attribute covers this process (chatcore.main is not imported yet).
    if args.db:
        os.environ["CHATCORE_DB"] = args.db
        config.DB_PATH = args.db
    if args.no_recovery:
        os.environ["CHATCORE_STREAM_RECOVERY"] = "false"
        config.STREAM_RECOVERY_ENABLED = False

    uvicorn.run(
        "chatcore.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
