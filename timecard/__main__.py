from __future__ import annotations

import argparse
import os

import uvicorn

from timecard.config import IDENTITY_MODES, STORAGE_BACKENDS, ConfigError, load_settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="timecard")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--reload", action="store_true")
    parser.add_argument("--storage", choices=sorted(STORAGE_BACKENDS), help="Overrides TIMECARD_STORAGE")
    parser.add_argument("--identity", choices=sorted(IDENTITY_MODES), help="Overrides TIMECARD_IDENTITY")
    args = parser.parse_args(argv)

    if args.storage:
        os.environ["TIMECARD_STORAGE"] = args.storage
    if args.identity:
        os.environ["TIMECARD_IDENTITY"] = args.identity

    try:
        load_settings()
    except ConfigError as e:
        print(f"timecard: {e}")
        return 1

    uvicorn.run("timecard.app:app", host=args.host, port=args.port, reload=bool(args.reload), proxy_headers=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
