import sys
import logging
import argparse
import getpass

from smartmarks.client import BookmarkSession, ClientConfig
from smartmarks.client.errors import (
    AuthenticationRequired,
    IdentityUnavailable,
    SmartmarksError,
)

log = logging.getLogger('werkzeug')
log.disabled = True
logger = logging.getLogger("smartmarks.watch")


def serve(args) -> None:
    from smartmarks import create_app

    cli = sys.modules['flask.cli']
    cli.show_server_banner = lambda *x: None

    app = create_app()
    print(f"Smartmarks starting on http://{args.host}:{args.port}", flush=True)
    app.run(host=args.host, port=args.port, debug=False)


def _render(snapshot) -> None:
    print(f"\nYour Bookmarks ({len(snapshot)})", flush=True)
    for entry in snapshot:
        marker = "" if not entry.is_provisional else f" [{entry.state}]"
        print(f"  {entry.bookmark.title} <{entry.bookmark.target}>{marker}")


def watch(args) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config = ClientConfig.from_env()
    if args.url:
        config.url = args.url
    password = args.password or getpass.getpass("Password: ")

    session = BookmarkSession.connect(config)
    try:
        session.identity.login(args.username, password)
        engine = session.open()
    except SmartmarksError as exc:
        print(f"Sign-in failed: {exc}", file=sys.stderr)
        return 1

    engine.on_change(_render)
    engine.on_result(lambda result: print(result.message, flush=True))
    _render(engine.snapshot())
    try:
        while True:
            session.pump(timeout=0.5)
            try:
                session.identity.refresh_if_needed(config.refresh_margin_seconds)
            except IdentityUnavailable as exc:
                logger.warning("Token refresh failed: %s", exc)
    except KeyboardInterrupt:
        pass
    except AuthenticationRequired as exc:
        print(f"Session expired: {exc}", file=sys.stderr)
        return 1
    finally:
        session.close()
        session.identity.sign_out()
    return 0


def main() -> None:
    p = argparse.ArgumentParser(prog="smartmarks")
    sub = p.add_subparsers(dest="command")

    serve_p = sub.add_parser("serve", help="run the bookmark server")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8072)

    watch_p = sub.add_parser("watch", help="follow a user's bookmarks live")
    watch_p.add_argument("--url", default=None)
    watch_p.add_argument("--username", required=True)
    watch_p.add_argument("--password", default=None)

    args = p.parse_args()
    if args.command == "watch":
        sys.exit(watch(args))
    if args.command is None:
        args = p.parse_args(["serve"])
    serve(args)


if __name__ == "__main__":
    main()
