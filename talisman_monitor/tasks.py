import asyncio
import datetime
import logging
from typing import Optional, Sequence

from .config import HEARTBEAT_INTERVAL_SECONDS
from .render import RenderSink
from .state import MonitorState, Snapshot

log = logging.getLogger("TalismanMonitor.Tasks")


async def publish_snapshot(sinks: Sequence[RenderSink], snapshot: Snapshot):
    """Hands one snapshot to every sink; a failing sink does not stop the others."""
    results = await asyncio.gather(*(sink.render(snapshot) for sink in sinks), return_exceptions=True)
    for sink, result in zip(sinks, results):
        if isinstance(result, Exception):
            log.error(f"Render sink {type(sink).__name__} failed: {result}",
                      exc_info=(type(result), result, result.__traceback__))


async def redraw_tick(monitor: MonitorState, sinks: Sequence[RenderSink]) -> Optional[Snapshot]:
    """
    One scheduler firing: drain whatever changed under the lock, then render outside it.
    Returns the emitted snapshot, or None when nothing changed.
    """
    async with monitor.lock:
        monitor.check_day()
        snapshot = monitor.drain()
    if snapshot is None:
        return None
    await publish_snapshot(sinks, snapshot)
    return snapshot


async def redraw_scheduler_task(app):
    """
    Redraws at most once per interval, however fast log lines arrive.
    Several changes to the same node between two firings show only the latest state.
    """
    monitor = app["monitor"]
    interval = app["config"].redraw_interval_ms / 1000.0
    log.info(f"Redraw scheduler task started ({app['config'].redraw_interval_ms} ms interval).")
    while True:
        await asyncio.sleep(interval)
        try:
            await redraw_tick(monitor, app["render_sinks"])
        except Exception:
            log.error("Error in redraw_scheduler_task:", exc_info=True)


async def debug_logger_task(app):
    log.info("Debug heartbeat task started.")
    monitor = app["monitor"]
    while True:
        await asyncio.sleep(HEARTBEAT_INTERVAL_SECONDS)
        occupied = len(monitor.sessions.sessions)
        log.info(
            f"[HEARTBEAT] Occupied nodes: {occupied}/{monitor.max_nodes}, Events applied: {monitor.events_applied}, "
            f"Line Queue: {app['line_queue'].qsize()}, Calls today: {monitor.stats.todays_calls}, "
            f"Last user: {monitor.stats.last_logged_off_user}"
        )


async def start_background_tasks(app):
    import concurrent.futures
    import threading
    from .log_processor import blocking_log_reader, log_processor_task, scan_log_history

    config = app["config"]
    log.info("Starting background tasks...")

    monitor = MonitorState(config.max_nodes, config.excluded_users, clock=app.get("clock", datetime.date.today))
    app["monitor"] = monitor
    app.setdefault("render_sinks", [])
    app["tasks"] = []
    app["log_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=2)
    loop = asyncio.get_running_loop()

    # The seed carries the day the scan counted; the first tick rolls it forward if needed
    scan_day = monitor.clock()
    scan = await loop.run_in_executor(
        app["log_executor"], scan_log_history,
        config.log_file, config.history_scan_lines, scan_day, config.excluded_users,
    )
    async with monitor.lock:
        monitor.seed(scan.todays_calls, scan.last_logged_off_user, today=scan_day)
    log.info("Initial state has been populated from the log file.")

    for sink in app["render_sinks"]:
        await sink.start()
    await redraw_tick(monitor, app["render_sinks"])

    line_queue = asyncio.Queue()
    app["line_queue"] = line_queue
    shutdown_event = threading.Event()
    wake_event = threading.Event()
    app["log_reader_shutdown_event"] = shutdown_event
    app["log_reader_wake_event"] = wake_event
    app["log_reader_future"] = loop.run_in_executor(
        app["log_executor"], blocking_log_reader,
        config.log_file, loop, line_queue, shutdown_event, scan.end_offset, wake_event,
    )

    app["tasks"].extend(
        [
            asyncio.create_task(log_processor_task(monitor, line_queue)),
            asyncio.create_task(redraw_scheduler_task(app)),
            asyncio.create_task(debug_logger_task(app)),
        ]
    )
    log.info(f"Background tasks started for {config.max_nodes} nodes.")


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    for task in app.get("tasks", []):
        task.cancel()
    if "tasks" in app:
        await asyncio.gather(*app["tasks"], return_exceptions=True)
    log.info("Asyncio background tasks cancelled.")

    if "log_reader_shutdown_event" in app:
        app["log_reader_shutdown_event"].set()
        app["log_reader_wake_event"].set()

    for sink in app.get("render_sinks", []):
        try:
            await sink.close()
        except Exception:
            log.error(f"Error closing render sink {type(sink).__name__}:", exc_info=True)

    if app.get("log_executor"):
        app["log_executor"].shutdown(wait=True)
        log.info("log_executor shut down.")
