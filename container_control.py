import threading
import time
import logging
import signal
import os
import psutil
from datetime import UTC, datetime
from typing import Any, Dict, Optional

# Import all cycle runner functionality
from cycle_runner import (
    CycleRunner,
    RunStatistics,
    asyncio,
    logger as cr_logger
)
from cycle_models import ConfigError, CycleConfig, load_cycle_config

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response

# ------------------------------------------------------
# Logging in UTC
# ------------------------------------------------------
logging.Formatter.converter = time.gmtime

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)sZ - %(levelname)s - %(name)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("cycle_container_control")

app = FastAPI()

# ------------------------------------------------------
# Global Runtime State
# ------------------------------------------------------
current_settings = {
    'app_status': 'initializing',  # 'initializing' | 'running' | 'stopped' | 'completed' | 'error'
    'container_status': 'running'
}

cycle_runner_instance = None  # type: Optional[CycleRunner]
last_statistics = None        # type: Optional[RunStatistics]
event_loop = None             # type: Optional[asyncio.AbstractEventLoop]
background_thread = None      # type: Optional[threading.Thread]

STOP_TIMEOUT_S = 10


# ---------------------------------------------------------------------
# STOP HELPER
# ---------------------------------------------------------------------
def _stop_cycle_runner():
    """
    Ask the running cycle runner to stop, wait for its background thread to
    drain in-flight requests, then mark the app 'stopped'.
    """
    global cycle_runner_instance

    instance = cycle_runner_instance
    loop = event_loop
    thread = background_thread

    if not instance or not instance.running:
        logger.info("No running cycle runner instance to stop.")
        if current_settings['app_status'] == 'running':
            current_settings['app_status'] = 'stopped'
        cycle_runner_instance = None
        return

    logger.info("Stopping existing cycle runner...")
    try:
        if loop and not loop.is_closed() and loop.is_running():
            future = asyncio.run_coroutine_threadsafe(instance.stop_generating(), loop)
            future.result(timeout=STOP_TIMEOUT_S)
        else:
            logger.warning("Event loop unavailable or not running; forcing instance.running = False.")
            instance.running = False
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=STOP_TIMEOUT_S)
            if thread.is_alive():
                logger.warning(f"Cycle runner thread still draining after {STOP_TIMEOUT_S}s.")
    except Exception as e:
        logger.error(f"Unexpected error stopping cycle runner: {e}", exc_info=True)
    finally:
        current_settings['app_status'] = 'stopped'
        cycle_runner_instance = None
        logger.info("Cycle runner stopped and marked as 'stopped'.")


# ---------------------------------------------------------------------
# BACKGROUND THREAD ROUTINE
# ---------------------------------------------------------------------
def run_cycle_runner_in_loop(config: CycleConfig):
    """
    Dedicated background thread: creates an asyncio loop,
    instantiates the cycle runner, and runs until done.
    """
    global event_loop, cycle_runner_instance, last_statistics

    try:
        event_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(event_loop)

        last_statistics = RunStatistics()
        cycle_runner_instance = CycleRunner(config=config, statistics=last_statistics)
        if current_settings['app_status'] != 'running':
            logger.info("Stop requested before cycle generation began.")
            return
        logger.info("Starting cycle generation...")
        runner = cycle_runner_instance
        event_loop.run_until_complete(runner.start_generating())
        if runner.state.value == 'completed' and current_settings['app_status'] == 'running':
            current_settings['app_status'] = 'completed'
    except asyncio.CancelledError:
        logger.info("Cycle generation cancelled.")
    except Exception as e:
        logger.error(f"Background cycle runner error: {e}", exc_info=True)
        current_settings['app_status'] = 'error'
    finally:
        logger.info("Background cycle runner thread exiting.")
        if current_settings['app_status'] == 'running':
            current_settings['app_status'] = 'stopped'

        if event_loop and not event_loop.is_closed():
            tasks = asyncio.all_tasks(event_loop)
            logger.debug(f"Cleaning up {len(tasks)} tasks in event loop.")
            for task in tasks:
                task.cancel()
            try:
                event_loop.run_until_complete(asyncio.gather(*tasks, return_exceptions=True))
            except RuntimeError as e:
                logger.warning(f"Error during loop shutdown gather: {e}")
            finally:
                event_loop.close()
                logger.info("Asyncio event loop closed.")


def _collect_statistics(timeout: float = 0.5) -> Dict[str, Any]:
    """Snapshot of the current (or last finished) run, plus the rolling RPS."""
    stats = last_statistics
    if stats is None:
        return {}
    loop = event_loop
    instance = cycle_runner_instance

    if instance and instance.running and loop and not loop.is_closed() and loop.is_running():
        async def snapshot_async():
            snapshot = await stats.snapshot()
            snapshot["rps"] = await stats.get_rps()
            snapshot["in_flight"] = instance.get_inflight_count()
            return snapshot
        future = asyncio.run_coroutine_threadsafe(snapshot_async(), loop)
        try:
            return future.result(timeout=timeout)
        except Exception as e:
            logger.error(f"Error getting statistics from runner: {e}")
            return {}

    # Loop is gone: the run is over and nothing mutates the statistics any more.
    snapshot = stats.as_dict()
    snapshot["rps"] = 0.0
    snapshot["in_flight"] = 0
    return snapshot


# ---------------------------------------------------------------------
# FASTAPI ENDPOINTS
# ---------------------------------------------------------------------
@app.get('/api/health')
async def health_check():
    """Basic health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "app_status": current_settings['app_status']
    })


@app.post('/api/start')
async def start_cycle_runner(data: dict):
    """Start the cycle runner with the given configuration.
    Runs until `max_requests` cycles are done, `/api/stop` is called, or the
    container shuts down. An active runner is stopped before the new one begins.
    """
    global background_thread

    if current_settings['app_status'] == 'running':
        logger.info("Received /api/start while cycle runner is already running. Stopping it first...")
        await asyncio.to_thread(_stop_cycle_runner)

    try:
        config = load_cycle_config(data)
        logger.info("Start request validated successfully.")
        log_level = logging.DEBUG if config.debug else logging.INFO
        cr_logger.setLevel(log_level)
        for handler in cr_logger.handlers:
            handler.setLevel(log_level)
        logger.info(f"Cycle Runner log level set to {logging.getLevelName(log_level)}.")
    except ConfigError as ce:
        logger.error(f"Request validation failed: {ce}")
        current_settings['app_status'] = 'stopped'
        raise HTTPException(status_code=400, detail=str(ce))

    current_settings['app_status'] = 'running'
    background_thread = threading.Thread(
        target=run_cycle_runner_in_loop,
        args=(config,),
        daemon=True
    )
    background_thread.start()

    logger.info("CycleRunner started")

    return JSONResponse({"message": "Cycle runner started with the provided configuration"})


@app.post('/api/stop')
async def stop_cycle_runner():
    """
    Stops the running cycle runner (if any) and sets status to 'stopped'.
    If already stopped, returns a message that it's stopped.
    """
    if current_settings['app_status'] != 'running':
        if current_settings['app_status'] in ('stopped', 'completed'):
            return JSONResponse({"message": f"Cycle runner is already {current_settings['app_status']}."})
        return JSONResponse({"message": f"No running cycle runner to stop (status={current_settings['app_status']})."})

    await asyncio.to_thread(_stop_cycle_runner)
    return JSONResponse({"message": "Cycle runner stopped."})


@app.get('/api/metrics')
async def api_metrics():
    """
    Return combined container + cycle runner stats.
    Run statistics are placed under the top-level 'metrics' key.
    """
    container_cpu_percent = psutil.cpu_percent(interval=0.1)
    container_mem = psutil.virtual_memory()
    net_io = psutil.net_io_counters()

    resp_body = {
        "timestamp": datetime.now(tz=UTC).isoformat().replace("+00:00", "Z"),
        "app_status": current_settings['app_status'],
        "container_status": current_settings['container_status'],
        "network": {
            "bytes_sent": net_io.bytes_sent,
            "bytes_recv": net_io.bytes_recv,
            "packets_sent": net_io.packets_sent,
            "packets_recv": net_io.packets_recv
        },
        "system": {
            "cpu_percent": round(container_cpu_percent, 1),
            "memory_percent": round(container_mem.percent, 1),
            "memory_available_mb": round(container_mem.available / (1024 * 1024), 2),
            "memory_used_mb": round(container_mem.used / (1024 * 1024), 2)
        },
        "metrics": _collect_statistics()
    }
    return JSONResponse(resp_body)


@app.get('/metrics')
async def metrics_prometheus():
    """
    Prometheus /metrics endpoint with combined container + cycle runner stats.
    """
    container_cpu_percent = psutil.cpu_percent(interval=0.1)
    container_mem = psutil.virtual_memory()
    stats = _collect_statistics()
    roles = stats.get("roles", {})

    status_map = {
        "initializing": 0,
        "running": 1,
        "stopped": 2,
        "error": 3,
        "completed": 4
    }
    app_status_val = status_map.get(current_settings['app_status'], 3)

    lines = [
        "# HELP container_cpu_percent CPU usage percent.",
        "# TYPE container_cpu_percent gauge",
        f"container_cpu_percent {round(container_cpu_percent, 1)}",
        "# HELP container_memory_percent Memory usage percent.",
        "# TYPE container_memory_percent gauge",
        f"container_memory_percent {round(container_mem.percent, 1)}",
        "# HELP app_status Application status (initializing=0, running=1, stopped=2, error=3, completed=4).",
        "# TYPE app_status gauge",
        f"app_status {app_status_val}",
        "# HELP cycle_runner_rps Requests completed over the last second.",
        "# TYPE cycle_runner_rps gauge",
        f"cycle_runner_rps {float(stats.get('rps', 0.0))}",
        "# HELP cycle_runner_cycles_started_total Cycles whose A request was dispatched.",
        "# TYPE cycle_runner_cycles_started_total counter",
        f"cycle_runner_cycles_started_total {stats.get('cycles_started', 0)}",
        "# HELP cycle_runner_requests_total Completed requests by role and result.",
        "# TYPE cycle_runner_requests_total counter",
    ]
    for role, role_stats in roles.items():
        lines.append(f'cycle_runner_requests_total{{role="{role}",result="success"}} {role_stats["successes"]}')
        lines.append(f'cycle_runner_requests_total{{role="{role}",result="failure"}} {role_stats["failures"]}')
    lines.extend([
        "# HELP cycle_runner_failures_total Failed requests by failure kind.",
        "# TYPE cycle_runner_failures_total counter",
    ])
    for kind, count in stats.get("failures_by_kind", {}).items():
        lines.append(f'cycle_runner_failures_total{{kind="{kind}"}} {count}')
    mean_a_to_a = stats.get("a_to_a", {}).get("mean_ms")
    mean_a_to_b = stats.get("a_to_b", {}).get("mean_ms")
    lines.extend([
        "# HELP cycle_runner_a_to_a_mean_ms Mean observed interval between A dispatches.",
        "# TYPE cycle_runner_a_to_a_mean_ms gauge",
        f"cycle_runner_a_to_a_mean_ms {mean_a_to_a if mean_a_to_a is not None else 0.0}",
        "# HELP cycle_runner_a_to_b_mean_ms Mean observed offset from A dispatch to B dispatch.",
        "# TYPE cycle_runner_a_to_b_mean_ms gauge",
        f"cycle_runner_a_to_b_mean_ms {mean_a_to_b if mean_a_to_b is not None else 0.0}",
    ])
    return Response("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")


# ---------------------------------------------------------------------
# SIGNAL HANDLER (SIGTERM, SIGINT)
# ---------------------------------------------------------------------
def handle_signal(signum, frame):
    """
    Handle SIGTERM/SIGINT to gracefully stop the cycle runner.
    """
    signal_name = signal.Signals(signum).name
    logger.info(f"Received signal {signal_name} ({signum}); initiating shutdown.")
    _stop_cycle_runner()

    logger.info("Exiting cycle_container_control due to signal.")
    os._exit(0)


# ---------------------------------------------------------------------
# MAIN ENTRY POINT (for dev usage)
# ---------------------------------------------------------------------
if __name__ == '__main__':
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    logger.info("Starting cycle_container_control API server...")
    current_settings['app_status'] = 'initializing'

    import uvicorn
    uvicorn.run(
        "container_control:app",
        host='0.0.0.0',
        port=int(os.environ.get("PORT", "8080")),
        log_level="info",
        reload=os.environ.get("DEV_RELOAD", "false").lower() == "true"
    )
