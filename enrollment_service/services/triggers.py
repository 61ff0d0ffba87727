"""Matriculation side-effects and how their failures are treated.

A REQUIRED trigger's failure propagates and the caller compensates; a
BEST_EFFORT trigger's failure is logged and dropped.  Triggers run in
list order with required ones first, and the first required failure
stops the run.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Sequence
from typing import Protocol

from enrollment_service.core.metrics import TRIGGER_RUNS
from enrollment_service.models.enrollment import EnrollmentDetail

logger = logging.getLogger(__name__)


class TriggerKind(enum.Enum):
    REQUIRED = "required"
    BEST_EFFORT = "best_effort"


class Trigger(Protocol):
    name: str
    kind: TriggerKind

    async def run(self, detail: EnrollmentDetail) -> None: ...


async def run_triggers(triggers: Sequence[Trigger], detail: EnrollmentDetail) -> None:
    ordered = sorted(triggers, key=lambda t: t.kind is not TriggerKind.REQUIRED)
    for trigger in ordered:
        kind = trigger.kind.value
        try:
            await trigger.run(detail)
        except Exception as exc:
            TRIGGER_RUNS.labels(trigger=trigger.name, kind=kind, result="failed").inc()
            if trigger.kind is TriggerKind.REQUIRED:
                logger.warning(
                    "Required trigger %s failed for enrollment=%d: %s",
                    trigger.name,
                    detail.id,
                    exc,
                    extra={"enrollment_id": detail.id, "trigger": trigger.name},
                )
                raise
            logger.warning(
                "Best-effort trigger %s failed for enrollment=%d, ignoring",
                trigger.name,
                detail.id,
                exc_info=True,
                extra={"enrollment_id": detail.id, "trigger": trigger.name},
            )
        else:
            TRIGGER_RUNS.labels(trigger=trigger.name, kind=kind, result="ok").inc()
