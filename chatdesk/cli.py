#!/usr/bin/env python3
"""
chatdesk CLI.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start           Start the API server
    stats           info            Show database stats and config at a glance
    set-key                         Store (or replace) a provider API key
    promote                         Grant admin rights to a user by email
    ping            status          Check a running instance
"""

import argparse
import sys

__version__ = "1.0.0"


def _store():
    from chatdesk.config import get_config, get_section
    from chatdesk.storage.sqlite_store import SQLiteStore

    return SQLiteStore(get_section("storage", get_config())["sqlite_path"])


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chatdesk API server."""
    import uvicorn
    from chatdesk.config import get_config, get_section

    cfg = get_config()
    server = get_section("server", cfg)
    provider = get_section("provider", cfg)
    host = args.host or server["host"]
    port = args.port or server["port"]

    print(f"  chatdesk v{__version__} on {host}:{port}")
    print(f"  Provider: {provider['name']} ({provider['url']})")
    print(f"  Model: {provider['default_model']}")
    print()

    uvicorn.run(
        "chatdesk.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_stats(args):
    """Show database stats and config at a glance."""
    from chatdesk.config import get_config, get_section

    cfg = get_config()
    provider = get_section("provider", cfg)
    store = _store()
    stats = store.get_stats()
    stored_key = store.get_active_api_key(provider["name"])

    print(f"  Database: {store.db_path}")
    print(f"  Users: {stats['totalUsers']} ({stats['adminUsers']} admin)")
    print(f"  Conversations: {stats['totalConversations']}")
    print(
        f"  Messages: {stats['totalMessages']} "
        f"(user: {stats['userMessages']}, assistant: {stats['assistantMessages']})"
    )
    print(f"  Provider: {provider['name']}, model {provider['default_model']}")
    if stored_key:
        source = "admin key store"
    elif provider.get("api_key"):
        source = "config"
    else:
        source = "NOT SET"
    print(f"  API key: {source}")


def cmd_set_key(args):
    """Store a provider API key, replacing any existing one for that provider."""
    secret = args.key.strip()
    if not secret:
        print("  ✗  Key must not be empty")
        return 1
    key = _store().upsert_api_key(args.provider.strip(), secret)
    print(f"  ✓  Saved {key.provider} key {key.masked}")
    return 0


def cmd_promote(args):
    """Grant (or with --revoke, remove) admin rights."""
    store = _store()
    user = store.get_user_by_email(args.email.strip().lower())
    if user is None:
        print(f"  ✗  No user with email {args.email}")
        return 1
    store.set_user_admin(user.id, not args.revoke)
    state = "no longer an admin" if args.revoke else "now an admin"
    print(f"  ✓  {user.email} is {state}")
    return 0


def cmd_ping(args):
    """Check a running chatdesk instance."""
    import httpx

    url = (args.url or "http://localhost:5001").rstrip("/")
    try:
        resp = httpx.get(f"{url}/api/health", timeout=5)
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
        return 1
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")
        return 1

    if resp.status_code != 200:
        print(f"  ✗  Got HTTP {resp.status_code}")
        return 1
    data = resp.json()
    print(f"  ✓  {url} is up (ready: {data.get('ready')}, active turns: {data.get('activeTurns', 0)})")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under one or more names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="chatdesk",
        description="chatdesk: multi-user AI chat server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatdesk {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start"], "Start the API server", cmd_serve, setup_serve)

    _add_command(sub, ["stats", "info"], "Show database stats and config", cmd_stats)

    def setup_set_key(p):
        p.add_argument("provider", help="Provider name, e.g. openrouter")
        p.add_argument("key", help="API key")

    _add_command(sub, ["set-key"], "Store a provider API key", cmd_set_key, setup_set_key)

    def setup_promote(p):
        p.add_argument("email", help="Email of an existing user")
        p.add_argument("--revoke", action="store_true", help="Remove admin rights instead")

    _add_command(sub, ["promote"], "Grant admin rights to a user", cmd_promote, setup_promote)

    def setup_ping(p):
        p.add_argument("--url", "-u", default=None, help="chatdesk URL (default: http://localhost:5001)")

    _add_command(sub, ["ping", "status"], "Check a running instance", cmd_ping, setup_ping)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
