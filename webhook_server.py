"""
Webhook server to receive quote requests and trigger Allianz automation
Version: 2.0.0 - Single browser worker, cleanup scheduler, screenshots and reports per task
"""
import asyncio
import json
import logging
import threading
import queue
import time
import shutil
from datetime import datetime
from pathlib import Path
from flask import Flask, request, jsonify, send_file
from flask_cors import CORS
from allianz_quote import run_quote
from quote_models import QuoteAutomationError, RunStatus
from result_sink import ResultSink
from config import (
    WEBHOOK_HOST, WEBHOOK_PORT, WEBHOOK_PATH, LOG_DIR, TRACE_DIR, SCREENSHOT_DIR,
    DATASET_DIR, START_WORKERS_ON_IMPORT
)

# Setup logging with detailed format
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
    handlers=[
        logging.FileHandler(LOG_DIR / 'webhook_server.log'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
# Allow all origins; callers are other internal services
CORS(app, resources={
    r"/*": {
        "origins": "*",
        "methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"]
    }
})

SUPPORTED_ACTIONS = ['start_quote']

# Task state by task id
active_sessions = {}

# One page per process; further requests wait in the queue
task_queue = queue.Queue()
MAX_CONCURRENT_RUNS = 1
active_workers = 0
worker_lock = threading.Lock()
workers_started = False

# Cleanup scheduler configuration
CLEANUP_INTERVAL_HOURS = 6
CLEANUP_MAX_AGE_DAYS = 2
MAX_TRACE_FILES = 5

cleanup_thread = None
cleanup_stop_event = threading.Event()

sink = ResultSink()

RUN_STATUS_TO_TASK_STATUS = {
    RunStatus.SUCCESS: "completed",
    RunStatus.FAILED: "failed",
    RunStatus.ERROR: "error",
}


def update_queue_positions():
    """Renumber queued tasks in the order they were accepted"""
    position = 1
    for task_id, task in list(active_sessions.items()):
        if task.get("status") == "queued":
            task["queue_position"] = position
            position += 1
        elif "queue_position" in task:
            task["queue_position"] = 0


def _remove_path(path: Path) -> bool:
    try:
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True
    except OSError as e:
        logger.debug(f"[CLEANUP] Could not delete {path}: {e}")
        return False


def cleanup_old_files(max_age_days: int = CLEANUP_MAX_AGE_DAYS) -> int:
    """
    Cleanup old files to prevent disk space issues:
    - Screenshot folders, run reports and logs older than max_age_days
    - Keep only MAX_TRACE_FILES most recent trace files

    Returns:
        int: number of deleted items
    """
    logger.info("[CLEANUP] Starting scheduled cleanup...")
    now = time.time()
    max_age_seconds = max_age_days * 24 * 60 * 60
    deleted_count = 0

    aged = [
        ("screenshot folder", SCREENSHOT_DIR.iterdir()),
        ("run report", DATASET_DIR.glob("*.json")),
        ("log", LOG_DIR.glob("*.log")),
    ]
    for label, paths in aged:
        for path in list(paths):
            try:
                age = now - path.stat().st_mtime
            except OSError:
                continue
            if age > max_age_seconds and _remove_path(path):
                deleted_count += 1
                logger.info(f"[CLEANUP] Deleted old {label}: {path.name}")

    trace_files = sorted(TRACE_DIR.glob("*.zip"), key=lambda f: f.stat().st_mtime, reverse=True)
    for trace_file in trace_files[MAX_TRACE_FILES:]:
        if _remove_path(trace_file):
            deleted_count += 1
            logger.info(f"[CLEANUP] Deleted old trace: {trace_file.name}")

    logger.info(f"[CLEANUP] Cleanup completed. Deleted {deleted_count} items.")
    return deleted_count


def cleanup_scheduler():
    """Background thread that runs cleanup periodically"""
    logger.info(f"[CLEANUP] Scheduler started - will run every {CLEANUP_INTERVAL_HOURS} hours")

    while not cleanup_stop_event.wait(CLEANUP_INTERVAL_HOURS * 60 * 60):
        try:
            cleanup_old_files()
        except Exception as e:
            logger.error(f"[CLEANUP] Error during cleanup: {e}", exc_info=True)

    logger.info("[CLEANUP] Scheduler stopped")


def task_summary(report) -> dict:
    """Fields of a run report exposed on the task status endpoint"""
    record = report.to_dict()
    processing = record["formProcessing"]
    return {
        "run_status": report.status.value,
        "fields_filled": processing["fieldsFilled"],
        "submitted": processing.get("submitted", False),
        "quote_captured": record["quote"].get("captured", False),
        "errors": processing["errors"],
        "screenshots": len(report.screenshots),
        "report_url": f"/report/{report.run_id}",
        "screenshots_url": f"/screenshots/{report.run_id}",
    }


async def run_quote_task(task_id: str, data: dict):
    """Run one quote and store its outcome in active_sessions"""
    logger.info(f"[TASK {task_id}] Starting quote automation")
    logger.info(f"[TASK {task_id}] Data received: {json.dumps(data, indent=2, default=str)}")

    try:
        report = await run_quote(data, run_id=task_id, sink=sink)
    except QuoteAutomationError as e:
        logger.error(f"[TASK {task_id}] Quote automation error: {e}")
        active_sessions[task_id].update({
            "status": "error",
            "error": str(e.__cause__ or e),
            "error_type": type(e.__cause__ or e).__name__,
            "failed_at": datetime.now().isoformat(),
            "report_url": f"/report/{task_id}",
            "screenshots_url": f"/screenshots/{task_id}",
        })
        return

    active_sessions[task_id].update(task_summary(report))
    active_sessions[task_id]["status"] = RUN_STATUS_TO_TASK_STATUS[report.status]
    active_sessions[task_id]["completed_at"] = datetime.now().isoformat()
    logger.info(f"[TASK {task_id}] Task finished with status {report.status.value}")


def run_quote_task_sync(task_id: str, data: dict):
    """Run the async task on a fresh event loop owned by the calling thread"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_quote_task(task_id, data))
    finally:
        loop.close()


def process_next_task(timeout: float = 1) -> bool:
    """
    Take one task from the queue and run it.

    Returns:
        bool: False if the queue stayed empty for timeout seconds
    """
    global active_workers

    try:
        task_id, data = task_queue.get(timeout=timeout)
    except queue.Empty:
        return False

    with worker_lock:
        active_workers += 1
    active_sessions[task_id]["status"] = "running"
    active_sessions[task_id]["started_at"] = datetime.now().isoformat()
    update_queue_positions()
    logger.info(f"[QUEUE] Processing task {task_id}. Active: {active_workers}/{MAX_CONCURRENT_RUNS}")

    try:
        run_quote_task_sync(task_id, data)
    except Exception as e:
        logger.error(f"[QUEUE] Error processing task {task_id}: {e}", exc_info=True)
        active_sessions[task_id]["status"] = "error"
        active_sessions[task_id]["error"] = str(e)
    finally:
        with worker_lock:
            active_workers -= 1
        task_queue.task_done()
        logger.info(f"[QUEUE] Task {task_id} finished. Active: {active_workers}/{MAX_CONCURRENT_RUNS}")
    return True


def worker_thread():
    """Worker thread that processes tasks from the queue, one at a time"""
    while True:
        try:
            process_next_task()
        except Exception as e:
            logger.error(f"[QUEUE] Worker thread error: {e}", exc_info=True)


def log_request_details():
    """Log detailed information about incoming request"""
    logger.info("=" * 80)
    logger.info(f"REQUEST RECEIVED - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Method: {request.method}")
    logger.info(f"URL: {request.url}")
    logger.info(f"Remote Address: {request.remote_addr}")
    logger.info(f"Content Type: {request.content_type}")
    logger.info("=" * 80)


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({"status": "healthy", "service": "allianz_quote_automation"}), 200


@app.route(WEBHOOK_PATH, methods=['POST', 'OPTIONS'])
def webhook_receiver():
    """
    Webhook endpoint to start a quote run

    Expected payload structure:
    {
        "action": "start_quote",
        "task_id": "optional_unique_id",
        "data": {
            "hsn": "0005",
            "tsn": "DGT",
            "versicherungsgrund": "Versicherer-Wechsel",
            ...
        }
    }
    Missing fields in data fall back to the form defaults.
    """
    # Handle CORS preflight
    if request.method == 'OPTIONS':
        return jsonify({"status": "ok"}), 200

    log_request_details()

    payload = request.get_json(silent=True)
    if payload is None:
        try:
            payload = json.loads(request.data.decode('utf-8')) if request.data else None
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"JSON decode error: {e}")
            return jsonify({
                "status": "error",
                "message": f"Invalid JSON: {str(e)}"
            }), 400

    if not isinstance(payload, dict) or not payload:
        logger.warning("Empty or non-object payload received")
        return jsonify({
            "status": "error",
            "message": "Payload must be a non-empty JSON object"
        }), 400

    logger.info(f"Processing webhook request with payload keys: {list(payload.keys())}")

    action = payload.get('action', 'start_quote')
    if action not in SUPPORTED_ACTIONS:
        logger.warning(f"Unknown action: {action}")
        return jsonify({
            "status": "error",
            "message": f"Unknown action: {action}. Supported actions: {SUPPORTED_ACTIONS}"
        }), 400

    data = payload.get('data')
    if data is None:
        data = {}
    if not isinstance(data, dict):
        logger.warning(f"Invalid data field type: {type(data).__name__}")
        return jsonify({
            "status": "error",
            "message": "'data' must be a JSON object"
        }), 400

    task_id = str(payload.get('task_id') or f"task_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{len(active_sessions)}")
    if task_id in active_sessions:
        return jsonify({
            "status": "error",
            "message": f"Task {task_id} already exists"
        }), 409

    active_sessions[task_id] = {
        "status": "queued",
        "task_id": task_id,
        "queued_at": datetime.now().isoformat(),
        "data_received": {"fields_count": len(data)},
        "queue_position": 0,
    }
    task_queue.put((task_id, data))
    update_queue_positions()
    logger.info(f"Task {task_id} queued (position {active_sessions[task_id]['queue_position']})")

    return jsonify({
        "status": "accepted",
        "task_id": task_id,
        "message": "Quote task queued",
        "status_url": f"/task/{task_id}/status"
    }), 202


@app.route('/task/<task_id>/status', methods=['GET'])
def get_task_status(task_id: str):
    """Get status of a quote task"""
    if task_id not in active_sessions:
        logger.warning(f"Task {task_id} not found")
        return jsonify({
            "status": "not_found",
            "message": f"Task {task_id} not found"
        }), 404

    update_queue_positions()
    status = dict(active_sessions[task_id])
    if status.get('status') == 'queued':
        with worker_lock:
            status['active_workers'] = active_workers
        status['max_workers'] = MAX_CONCURRENT_RUNS
        status['estimated_wait_time'] = f"~{status.get('queue_position', 0) * 3} minutes"

    return jsonify(status), 200


@app.route('/tasks', methods=['GET'])
def list_tasks():
    """List all known tasks with their status"""
    return jsonify({
        "total": len(active_sessions),
        "tasks": [
            {"task_id": task_id, "status": task.get("status")}
            for task_id, task in active_sessions.items()
        ]
    }), 200


@app.route('/queue/status', methods=['GET'])
def queue_status():
    """Get queue status and statistics"""
    with worker_lock:
        current_workers = active_workers
    queue_size = task_queue.qsize()

    status_counts = {}
    for task in active_sessions.values():
        status = task.get('status', 'unknown')
        status_counts[status] = status_counts.get(status, 0) + 1

    return jsonify({
        "active_runs": current_workers,
        "max_workers": MAX_CONCURRENT_RUNS,
        "queue_size": queue_size,
        "total_tasks": len(active_sessions),
        "status_breakdown": status_counts,
    }), 200


def _task_screenshot_dir(task_id: str) -> Path:
    return SCREENSHOT_DIR / Path(task_id).name


@app.route('/screenshots/<task_id>', methods=['GET'])
def list_screenshots(task_id: str):
    """List screenshots taken during a task"""
    task_dir = _task_screenshot_dir(task_id)
    if not task_dir.is_dir():
        return jsonify({
            "status": "not_found",
            "message": f"No screenshots for task {task_id}"
        }), 404

    screenshots = []
    for path in sorted(task_dir.glob("*.png"), key=lambda f: f.stat().st_mtime):
        stat = path.stat()
        screenshots.append({
            "filename": path.name,
            "name": path.stem,
            "size_kb": round(stat.st_size / 1024, 2),
            "created_at": datetime.fromtimestamp(stat.st_mtime).isoformat(),
            "url": f"/screenshot/{task_id}/{path.name}",
        })

    return jsonify({
        "task_id": task_id,
        "total": len(screenshots),
        "screenshots": screenshots
    }), 200


@app.route('/screenshot/<task_id>/<filename>', methods=['GET'])
def get_screenshot(task_id: str, filename: str):
    """Download a single screenshot"""
    path = _task_screenshot_dir(task_id) / Path(filename).name
    if path.suffix != ".png" or not path.is_file():
        return jsonify({
            "status": "not_found",
            "message": f"Screenshot {filename} not found for task {task_id}"
        }), 404

    return send_file(str(path), mimetype='image/png', as_attachment=True, download_name=path.name)


@app.route('/report/<task_id>', methods=['GET'])
def get_report(task_id: str):
    """Run report written by the result sink"""
    report = sink.load(Path(task_id).name)
    if report is None:
        return jsonify({
            "status": "not_found",
            "message": f"Report not found for task {task_id}"
        }), 404
    return jsonify(report), 200


def init_workers():
    """Start the queue worker and cleanup scheduler (once per process)"""
    global cleanup_thread, workers_started

    if workers_started:
        return
    workers_started = True

    logger.info("=" * 80)
    logger.info("ALLIANZ QUOTE AUTOMATION WEBHOOK SERVER")
    logger.info("=" * 80)
    logger.info(f"Queue System: {MAX_CONCURRENT_RUNS} worker thread")
    logger.info(f"Cleanup: Every {CLEANUP_INTERVAL_HOURS}h, delete files older than {CLEANUP_MAX_AGE_DAYS} days")

    for i in range(MAX_CONCURRENT_RUNS):
        worker = threading.Thread(target=worker_thread, daemon=True, name=f"Worker-{i+1}")
        worker.start()
        logger.info(f"  Worker {i+1}/{MAX_CONCURRENT_RUNS} started")

    cleanup_thread = threading.Thread(target=cleanup_scheduler, daemon=True, name="Cleanup-Scheduler")
    cleanup_thread.start()
    logger.info("  Cleanup scheduler started")

    logger.info("  Running initial cleanup...")
    cleanup_old_files()

    logger.info("=" * 80)
    logger.info("Server ready to accept quote requests...")
    logger.info("=" * 80)


# Initialize workers when module loads (for gunicorn)
if START_WORKERS_ON_IMPORT:
    init_workers()

if __name__ == '__main__':
    init_workers()
    logger.info(f"Starting webhook server on {WEBHOOK_HOST}:{WEBHOOK_PORT}")
    logger.info(f"Webhook endpoint: http://{WEBHOOK_HOST}:{WEBHOOK_PORT}{WEBHOOK_PATH}")
    logger.info(f"Health check: http://{WEBHOOK_HOST}:{WEBHOOK_PORT}/health")
    logger.info(f"Queue status: http://{WEBHOOK_HOST}:{WEBHOOK_PORT}/queue/status")
    logger.info(f"Logs directory: {LOG_DIR}")

    app.run(host=WEBHOOK_HOST, port=WEBHOOK_PORT, debug=False)
