"""
後処理タスク (best-effort)

確定/返金のクリティカル区間が終わった後に実行する副次的な書き込み。
失敗はログに残して次のタスクへ進み、呼び出し元には伝えない。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostCommitTask:
    name: str
    run: Callable[[], Awaitable[None]]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def run_post_commit_tasks(
    tasks: list[PostCommitTask],
    label: str,
    log: list[dict],
    first_step: int = 1,
) -> None:
    for step, task in enumerate(tasks, start=first_step):
        log.append({"step": step, "action": task.name, "status": "EXECUTING", "timestamp": now_iso()})
        try:
            await task.run()
            log[-1]["status"] = "COMPLETED"
        except Exception as e:
            log[-1]["status"] = "FAILED"
            log[-1]["error"] = str(e)
            logger.exception("Post-commit task %s failed for %s", task.name, label)
