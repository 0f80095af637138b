"""Post-commit tasks: best-effort side effects after a successful write.

Learn: Some work only makes sense once the main transaction is committed
(sending the confirmation email, claiming invitations). That work must
never undo or block the operation that triggered it:
- each task runs independently (one failing doesn't stop the others)
- each task is bounded by a timeout
- failures are logged, never raised

run_post_commit() returns {task_name: succeeded} so callers and tests can
see what happened without having to care.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()


@dataclass
class PostCommitTask:
    name: str
    run: Callable[[], Awaitable[Any]]


async def _run_one(task: PostCommitTask, timeout: float) -> bool:
    try:
        result = await asyncio.wait_for(task.run(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("post_commit.timeout", task=task.name, timeout=timeout)
        return False
    except Exception as e:
        logger.warning("post_commit.failed", task=task.name, error=str(e))
        return False
    # Tasks may report a soft failure by returning False
    if result is False:
        logger.warning("post_commit.unsuccessful", task=task.name)
        return False
    return True


async def run_post_commit(
    tasks: list[PostCommitTask], timeout: float
) -> dict[str, bool]:
    """Run tasks concurrently; never raises."""
    if not tasks:
        return {}
    outcomes = await asyncio.gather(*(_run_one(t, timeout) for t in tasks))
    return {task.name: ok for task, ok in zip(tasks, outcomes)}
