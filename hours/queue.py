"""File-based queue of refresh jobs for request handler / worker separation.

The request handler enqueues jobs under <state_dir>/queue/pending/{job_id}.json.
A worker takes the oldest pending job, runs it, and moves it to done/ or
failed/. Cancelling a queued job removes its pending file.
"""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List

QUEUE_DIR = "queue"
PENDING = "pending"
DONE = "done"
FAILED = "failed"

LOG = logging.getLogger("hours.queue")


def _queue_base(state_dir: Path) -> Path:
    return Path(state_dir) / QUEUE_DIR


def _pending_dir(state_dir: Path) -> Path:
    return _queue_base(state_dir) / PENDING


def _done_dir(state_dir: Path) -> Path:
    return _queue_base(state_dir) / DONE


def _failed_dir(state_dir: Path) -> Path:
    return _queue_base(state_dir) / FAILED


def enqueue(state_dir: Path, job_id: str, params: Dict[str, Any] | None = None) -> Path:
    """Enqueue a refresh job. Overwrites an existing pending file for the same id."""
    base = _pending_dir(state_dir)
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"{job_id}.json"
    data = {
        "job_id": job_id,
        "enqueued_at": datetime.now(UTC).isoformat(),
        "params": params or {},
    }
    path.write_text(json.dumps(data, indent=0), encoding="utf-8")
    LOG.info("Enqueued refresh job: %s", job_id)
    return path


def list_pending(state_dir: Path) -> List[Dict[str, Any]]:
    """List pending jobs, oldest first."""
    base = _pending_dir(state_dir)
    if not base.is_dir():
        return []
    tasks = []
    for f in base.glob("*.json"):
        try:
            data = json.loads(f.read_text(encoding="utf-8"))
            if isinstance(data, dict) and "job_id" in data:
                tasks.append(data)
        except (json.JSONDecodeError, OSError) as e:
            LOG.warning("Skip invalid queue file %s: %s", f, e)
    tasks.sort(key=lambda t: t.get("enqueued_at", ""))
    return tasks


def take_next(state_dir: Path) -> Dict[str, Any] | None:
    """Return the oldest pending job without removing it.

    Worker should call mark_done or mark_failed after processing.
    """
    pending = list_pending(state_dir)
    return pending[0] if pending else None


def remove(state_dir: Path, job_id: str) -> bool:
    """Drop a still-pending job. Returns False if it is no longer pending."""
    path = _pending_dir(state_dir) / f"{job_id}.json"
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    LOG.info("Removed pending job %s from queue", job_id)
    return True


def mark_done(state_dir: Path, job_id: str) -> None:
    """Move job from pending to done."""
    _move_task(state_dir, job_id, _done_dir(state_dir))


def mark_failed(state_dir: Path, job_id: str) -> None:
    """Move job from pending to failed."""
    _move_task(state_dir, job_id, _failed_dir(state_dir))


def _move_task(state_dir: Path, job_id: str, target_dir: Path) -> None:
    path = _pending_dir(state_dir) / f"{job_id}.json"
    if not path.is_file():
        LOG.debug("No pending job %s to move", job_id)
        return
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / path.name
    if target.exists():
        target.unlink()
    path.rename(target)
    LOG.info("Moved job %s to %s", job_id, target_dir.name)
