"""
Entry point for websource-browser.

Runs the session daemon when the daemon marker is present in the environment
(that is how `WebSourceBrowser.start_session` spawns it), otherwise a small
command line over `WebSourceBrowser`.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .client import WebSourceBrowser
from .config import DEFAULT_SESSION, DaemonSpawnEnv, SessionConfig
from .daemon import SessionDaemon
from .errors import WebSourceError
from .paths import ensure_dir, sanitize_session_name, session_log_file

logger = logging.getLogger("websource.browser")

__all__ = ["configure_logging", "format_output", "main", "run_cli", "run_daemon"]

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(debug: bool = False, log_path: Path | None = None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        filename=str(log_path) if log_path is not None else None,
        force=True,
    )


def run_daemon(env: dict[str, str] | None = None) -> int:
    """Run one session daemon in this process until it shuts down."""
    spawn = DaemonSpawnEnv.from_env(env)
    config = SessionConfig.from_env()
    name = sanitize_session_name(spawn.session_name)
    ensure_dir(config.logs_dir)
    configure_logging(config.debug, session_log_file(config.logs_dir, name))
    logger.info("Daemon process for session '%s' (headless=%s)", name, spawn.headless)
    daemon = SessionDaemon(name, headless=spawn.headless, config=config)
    return asyncio.run(daemon.run())


def format_output(data: Any, fmt: str = "json", output_file: str | None = None) -> str:
    if fmt == "pretty":
        text = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    else:
        text = json.dumps(data, ensure_ascii=False, default=str)
    if output_file:
        path = Path(output_file).expanduser().resolve()
        path.write_text(text, encoding="utf-8")
        logger.info("Output saved to: %s", path)
    else:
        print(text)
    return text


def _session_name(raw: str) -> str:
    # Names are used as file names; refuse any that would be rewritten,
    # otherwise "a b" and "a-b" would share one session.
    if sanitize_session_name(raw) != raw:
        raise argparse.ArgumentTypeError(
            f"invalid session name {raw!r} (use letters, digits, '_', '.', '-', up to 64 characters)"
        )
    return raw


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="websource-browser",
        description="Persistent browser sessions shared by short-lived commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  websource-browser --start --session work
  websource-browser --navigate https://example.com --session work
  websource-browser --eval "document.title" --session work
  websource-browser --stop --session work
""",
    )
    actions = parser.add_mutually_exclusive_group(required=True)
    actions.add_argument("--start", action="store_true", help="Start a new persistent browser session")
    actions.add_argument("--stop", action="store_true", help="Stop an existing browser session")
    actions.add_argument("--list", action="store_true", help="List all browser sessions")
    actions.add_argument("--ping", action="store_true", help="Ping a session daemon (refreshes its idle timer)")
    actions.add_argument("--status", action="store_true", help="Show a session daemon's idle status")
    actions.add_argument("--navigate", metavar="URL", help="Navigate to a URL in a session")
    actions.add_argument("--refresh", action="store_true", help="Reload the current page")
    actions.add_argument("--eval", metavar="CODE", help="Execute JavaScript in the page and print the result")
    actions.add_argument(
        "--view", nargs="?", const="", metavar="SELECTOR", help="View the page, or one element by selector"
    )
    actions.add_argument(
        "--analyze", nargs="?", const="", metavar="SELECTOR", help="Analyze page selectors, or an element's children"
    )
    actions.add_argument(
        "--screenshot", nargs="?", const="", metavar="FILE", help="Take a full-page screenshot (PNG)"
    )

    parser.add_argument(
        "--session",
        type=_session_name,
        default=DEFAULT_SESSION,
        help="Session name: letters, digits, '_', '.', '-', up to 64 characters (default: default)",
    )
    parser.add_argument("--headed", action="store_true", help="Start the browser with a visible window")
    parser.add_argument(
        "--wait-time", type=int, default=2000, help="Milliseconds to settle after navigation (default: 2000)"
    )
    parser.add_argument("--format", choices=("json", "pretty"), default="json", help="Output format")
    parser.add_argument("--output", default=None, help="Write output to a file instead of stdout")
    return parser.parse_args(argv)


def run_cli(args: argparse.Namespace, browser: WebSourceBrowser) -> Any:
    name = args.session
    if args.start:
        return browser.start_session(name, headless=not args.headed)
    if args.stop:
        return browser.stop_session(name)
    if args.list:
        return {"success": True, "sessions": browser.list_sessions()}
    if args.ping:
        return browser.ping_session(name)
    if args.status:
        return browser.session_status(name)
    if args.navigate is not None:
        return browser.navigate(args.navigate, name, wait_time=args.wait_time)
    if args.refresh:
        return browser.refresh_page(name, wait_time=args.wait_time)
    if args.eval is not None:
        return browser.execute_javascript(args.eval, name)
    if args.view is not None:
        return browser.view_element(args.view or None, name)
    if args.analyze is not None:
        return browser.analyze_selectors(args.analyze or None, name)
    return browser.take_screenshot(args.screenshot or None, name)


def main(argv: list[str] | None = None) -> int:
    if DaemonSpawnEnv.is_daemon():
        return run_daemon()

    args = _parse_args(argv)
    config = SessionConfig.from_env()
    configure_logging(config.debug)
    browser = WebSourceBrowser(config=config)
    try:
        result = run_cli(args, browser)
    except WebSourceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        format_output(exc.to_dict(), args.format)
        return 1
    finally:
        browser.disconnect()
    format_output(result, args.format, args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
