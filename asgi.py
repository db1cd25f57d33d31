"""
asgi.py -- Application assembly and server entry point for epicflare.

The only module that imports from both api/ and web/: it adds the HTML pages
and the OAuth consent flow from web/routes.py to the JSON app built in
api/main.py. Neither layer knows about the other.

Run with:  uvicorn asgi:app --reload
       or: epicflare --port 8787   (console script, see main() below)
"""

import argparse

import uvicorn

from api.main import app
from web.routes import router as web_router

app.include_router(web_router, tags=["Web UI"])


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="epicflare",
        description="Serve the epicflare accounts, OAuth and MCP application.",
        epilog="Configuration comes from the environment or .env (COOKIE_SECRET, DATABASE_URL, ...).",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8787, help="Port to listen on (default: 8787)")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    args = parser.parse_args()

    # uvicorn needs an import string, not the app object, for --reload.
    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload, proxy_headers=True)


if __name__ == "__main__":
    main()
