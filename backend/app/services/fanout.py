"""
Side-effect fan-out.

Runs the effects of an already-committed transition in parallel, each bounded
by a timeout. A failing effect is logged and captured in the dead letter
queue; it never raises into the caller and never touches the transition.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.reliability import bounded
from backend.app.models.dlq import DeadLetterQueue, DLQStatus

logger = logging.getLogger(__name__)


@dataclass
class SideEffect:
    task_name: str
    run: Callable[[], Awaitable[Any]]
    payload: Dict[str, Any] = field(default_factory=dict)
    on_success: Optional[Callable[[Any], None]] = None
    on_failure: Optional[Callable[[str], None]] = None
    dead_letter: bool = True


@dataclass
class SideEffectOutcome:
    task_name: str
    ok: bool
    result: Any = None
    error: Optional[str] = None


class SideEffectDispatcher:

    def __init__(self, timeout: float = None):
        self.timeout = timeout or settings.side_effect_timeout_seconds

    async def _attempt(self, effect: SideEffect) -> SideEffectOutcome:
        try:
            result = await bounded(effect.run(), self.timeout)
            return SideEffectOutcome(task_name=effect.task_name, ok=True, result=result)
        except asyncio.TimeoutError:
            return SideEffectOutcome(
                task_name=effect.task_name, ok=False, error=f"timed out after {self.timeout}s"
            )
        except Exception as exc:
            return SideEffectOutcome(
                task_name=effect.task_name, ok=False, error=f"{type(exc).__name__}: {exc}"
            )

    async def run(self, db: AsyncSession, effects: List[SideEffect]) -> List[SideEffectOutcome]:
        """
        Execute effects concurrently, then record outcomes in one commit.

        Only the callables run concurrently; all session work happens
        afterwards, sequentially.
        """
        if not effects:
            return []

        outcomes = await asyncio.gather(*(self._attempt(effect) for effect in effects))

        dead_lettered = False
        for effect, outcome in zip(effects, outcomes):
            if outcome.ok:
                if effect.on_success:
                    effect.on_success(outcome.result)
                continue

            logger.warning(
                "Side effect %s failed: %s", effect.task_name, outcome.error,
                extra={"task_name": effect.task_name, "payload": effect.payload},
            )
            if effect.on_failure:
                effect.on_failure(outcome.error)
            if effect.dead_letter:
                db.add(DeadLetterQueue(
                    task_name=effect.task_name,
                    error_message=outcome.error,
                    payload=effect.payload,
                    status=DLQStatus.FAILED,
                    created_at=datetime.now(timezone.utc),
                ))
                dead_lettered = True

        try:
            await db.commit()
        except SQLAlchemyError:
            logger.exception(
                "Could not record side effect outcomes%s",
                " (dead letters lost)" if dead_lettered else "",
            )
            await db.rollback()

        return list(outcomes)
