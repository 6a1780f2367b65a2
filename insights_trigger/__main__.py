from __future__ import annotations

import argparse

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Serve the HTTP trigger function locally")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=7071, help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    args = parser.parse_args()

    uvicorn.run(
        "insights_trigger.main:app",
        host=args.host,
        port=args.port,
        reload=bool(args.reload),
        log_config=None,
    )


if __name__ == "__main__":
    main()
