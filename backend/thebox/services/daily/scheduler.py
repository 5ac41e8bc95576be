import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from thebox import socketio


@dataclass
class ScheduledTask:
    name: str
    hour: int
    func: Callable
    cancelled: bool = False
    runs: int = 0
    last_run_at: Optional[datetime] = None

    def to_dict(self):
        return {
            'name': self.name,
            'hour': self.hour,
            'runs': self.runs,
            'last_run_at': self.last_run_at.isoformat() if self.last_run_at else None,
        }


_tasks: Dict[str, ScheduledTask] = {}


def seconds_until_next(hour: int, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until the next ``hour``:00 UTC. Exactly on the hour means a full day."""
    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def list_tasks() -> List[dict]:
    return [t.to_dict() for t in _tasks.values() if not t.cancelled]


def cancel_task(name: str) -> bool:
    """De-register ``name``. A sleeping worker notices on wake and exits without running."""
    task = _tasks.pop(name, None)
    if task is None:
        return False
    task.cancelled = True
    return True


def cancel_all() -> None:
    for name in list(_tasks):
        cancel_task(name)


def _run_once(app, task: ScheduledTask) -> None:
    with app.app_context():
        app.logger.info(f"[task-fire] name={task.name} run={task.runs + 1}")
        try:
            task.func()
        except Exception as exc:
            app.logger.exception(f"[task-failed] name={task.name} error={exc}")
        finally:
            task.runs += 1
            task.last_run_at = datetime.now(timezone.utc)


def _sleep(app, task: ScheduledTask, delay: float) -> None:
    try:
        hb = int(app.config.get('SCHEDULER_HEARTBEAT_SEC', 0))
    except (TypeError, ValueError):
        hb = 0
    if hb and hb > 0:
        slept = 0.0
        while slept < delay and not task.cancelled:
            step = min(hb, delay - slept)
            time.sleep(step)
            slept += step
            app.logger.info(f"[task-heartbeat] name={task.name} remaining={max(0, int(delay - slept))}s")
    else:
        time.sleep(delay)


def schedule_daily(app, name: str, func: Callable, hour: int = 0, run_now: bool = False) -> Optional[ScheduledTask]:
    """Run ``func`` inside an app context every day at ``hour`` UTC.

    - One task per name; registering an existing name is a no-op
    - ``run_now`` fires once immediately (catch-up after downtime)
    - Runs on a Socket.IO background task, so it follows the server's async mode
    """
    if name in _tasks:
        app.logger.info(f"[task-skip] name={name} already scheduled")
        return None

    task = ScheduledTask(name=name, hour=int(hour), func=func)
    _tasks[name] = task
    app.logger.info(f"[task-set] name={name} hour={hour} next_in={int(seconds_until_next(task.hour))}s")

    def _worker():
        if run_now:
            _run_once(app, task)
        while not task.cancelled:
            _sleep(app, task, seconds_until_next(task.hour))
            if task.cancelled:
                break
            _run_once(app, task)
        app.logger.info(f"[task-cancelled] name={name}")

    socketio.start_background_task(_worker)
    return task


def start_rotation_schedule(app) -> Optional[ScheduledTask]:
    """Register the midnight rotation. No-ops in TESTING or when disabled."""
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return None
    if not app.config.get('ENABLE_SCHEDULER', True):
        app.logger.info('[task-disabled] name=daily-rotation')
        return None

    from .rotation import run_rotation

    return schedule_daily(
        app,
        'daily-rotation',
        run_rotation,
        hour=int(app.config.get('ROTATION_HOUR_UTC', 0)),
        run_now=bool(app.config.get('ROTATION_RUN_ON_START', True)),
    )
