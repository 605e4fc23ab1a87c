import argparse
import asyncio
import logging
import os
import signal
import sys

# This boilerplate allows the script to be run directly (e.g., `python talisman_monitor`)
# by adding the project root to the Python path so the absolute imports below resolve.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from talisman_monitor import config, server
from talisman_monitor.render import TerminalRenderSink, watch_quit_keys
from talisman_monitor.tasks import start_background_tasks, cleanup_background_tasks

# --- Centralized Logging Configuration ---
log = logging.getLogger("TalismanMonitor")


def check_log_file(log_path: str):
    """Exits when the BBS log cannot be followed; there is nothing to monitor without it."""
    if not os.path.isfile(log_path):
        log.critical(f"Log file not found: {log_path}")
        sys.exit(1)
    if not os.access(log_path, os.R_OK):
        log.critical(f"Log file is not readable: {log_path}")
        sys.exit(1)


async def run_terminal(monitor_config: config.MonitorConfig):
    """Runs the pipeline with the full-screen terminal table until a quit key or signal."""
    loop = asyncio.get_running_loop()
    quit_event = asyncio.Event()
    handled_signals = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, quit_event.set)
            handled_signals.append(sig)
        except (NotImplementedError, RuntimeError):
            log.debug(f"Cannot install a handler for {sig.name} on this platform.")

    app = {
        "config": monitor_config,
        "render_sinks": [TerminalRenderSink(monitor_config)],
    }
    try:
        await start_background_tasks(app)
        with watch_quit_keys(loop, quit_event) as watching:
            if not watching:
                log.info("stdin is not a terminal; quit with SIGINT or SIGTERM.")
            await quit_event.wait()
    finally:
        await cleanup_background_tasks(app)
        for sig in handled_signals:
            loop.remove_signal_handler(sig)


def main():
    parser = argparse.ArgumentParser(
        description="Talisman Node Monitor - live view of who is on which node of a Talisman BBS",
        epilog="""
Examples:
  # Full-screen table in this terminal
  %(prog)s --path /opt/talisman

  # Do not count the sysop's own logins
  %(prog)s --path /opt/talisman --exclude-user sysop --exclude-user "Co Sysop"

  # Serve the table to browsers instead
  %(prog)s --path /opt/talisman --web --port 8766

In terminal mode the monitor logs to a file (default talisman_monitor.log,
override with --log-file or TALISMAN_MONITOR_LOG) so the screen stays clean.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('--path', required=True, metavar='TALISMAN_DIR',
                        help="Talisman installation directory (the one holding talisman.ini).")
    parser.add_argument('--exclude-user', action='append', default=[], metavar='NAME',
                        help="Do not count logins by this user in today's calls. Can be given multiple times.")
    parser.add_argument('--history-lines', type=int, default=config.DEFAULT_HISTORY_SCAN_LINES, metavar='N',
                        help="How many trailing log lines to replay at startup to find the last user.")
    parser.add_argument('--redraw-ms', type=int, default=config.DEFAULT_REDRAW_INTERVAL_MS, metavar='MS',
                        help="Minimum time between redraws in milliseconds.")
    parser.add_argument('--web', action='store_true', help="Serve the node table over HTTP/WebSocket.")
    parser.add_argument('--host', default=config.SERVER_HOST, help="Web mode bind address.")
    parser.add_argument('--port', type=int, default=config.SERVER_PORT, help="Web mode port.")
    parser.add_argument('--log-file', default=None, help="Where terminal mode writes its own log.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    log_format = dict(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                      datefmt='%Y-%m-%d %H:%M:%S')
    if args.web:
        logging.basicConfig(**log_format)
    else:
        logging.basicConfig(filename=args.log_file or config.MONITOR_LOG_FILE, **log_format)
        # Fatal startup errors still belong on the console
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.CRITICAL)
        logging.getLogger().addHandler(console_handler)

    try:
        monitor_config = config.load_talisman_config(
            args.path,
            excluded_users=args.exclude_user,
            history_scan_lines=args.history_lines,
            redraw_interval_ms=args.redraw_ms,
        )
    except config.ConfigError as e:
        log.critical(str(e))
        sys.exit(1)

    check_log_file(monitor_config.log_file)

    if args.web:
        server.run_server(monitor_config, host=args.host, port=args.port)
    else:
        asyncio.run(run_terminal(monitor_config))


if __name__ == "__main__":
    main()
