#!/usr/bin/env python3
"""Serve the Tasklane API with uvicorn.

Usage:
    python scripts/run_server.py --host 0.0.0.0 --port 8787
"""
from __future__ import annotations

import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Run the Tasklane API server")
    parser.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8787")))
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    uvicorn.run(
        "tasklane.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        # the API strips Server; stop uvicorn from adding it back
        server_header=False,
        proxy_headers=False,
    )


if __name__ == "__main__":
    main()
