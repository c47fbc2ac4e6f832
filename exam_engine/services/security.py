"""Append-only log of client-reported anomalies during an attempt.

Events are recorded for later review only; nothing here changes the
attempt's state.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, List, Optional

from sqlmodel import Session, select

from exam_engine.exceptions import NotFound
from exam_engine.models import SEVERITY_RANK, Attempt, SecurityEvent, Severity
from exam_engine.schemas import SecurityEventIn
from exam_engine.utils import utcnow

logger = logging.getLogger(__name__)


def record_event(
    session: Session,
    attempt_id: int,
    student_id: int,
    payload: SecurityEventIn,
    now: Optional[datetime] = None,
) -> SecurityEvent:
    """Append an event to the attempt's log, whatever state the attempt is in.

    Another student's attempt is reported as missing.
    """
    attempt = session.get(Attempt, attempt_id)
    if not attempt or attempt.student_id != student_id:
        raise NotFound(f"Attempt {attempt_id} not found")

    event = SecurityEvent(
        attempt_id=attempt.id,
        event_type=payload.event_type,
        severity=payload.severity,
        timestamp=now or utcnow(),
        details=payload.details,
    )
    session.add(event)
    session.commit()
    session.refresh(event)

    log = logger.warning if SEVERITY_RANK[event.severity] >= SEVERITY_RANK[Severity.HIGH] else logger.debug
    log("Security event %s (%s) on attempt %s", event.event_type.value, event.severity.value, attempt.id)
    return event


def list_events(session: Session, attempt_id: int) -> List[SecurityEvent]:
    stmt = (
        select(SecurityEvent)
        .where(SecurityEvent.attempt_id == attempt_id)
        .order_by(SecurityEvent.timestamp, SecurityEvent.id)
    )
    return session.exec(stmt).all()


def event_view(event: SecurityEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "event_type": event.event_type.value,
        "severity": event.severity.value,
        "timestamp": event.timestamp,
        "details": event.details,
    }


def summarize_events(events: List[SecurityEvent]) -> dict[str, Any]:
    """Counts by type and severity, plus the worst severity seen."""
    highest = max((e.severity for e in events), key=SEVERITY_RANK.__getitem__, default=None)
    return {
        "total": len(events),
        "by_type": dict(Counter(e.event_type.value for e in events)),
        "by_severity": dict(Counter(e.severity.value for e in events)),
        "highest_severity": highest.value if highest else None,
    }
