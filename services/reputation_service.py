"""
Reputation Scoring Engine.

The score is a projection of the append-only `reputation_events` log:

    score = clamp(100 + sum(points_delta), 0, 1000)

The clamp is applied to the running sum, never stored into it, so replaying
the log always reproduces the live score.
"""
import logging

from core.errors import ValidationError
from core.ledger import snapshot
from models import (
    ReputationEvent, ReputationEventType,
    BASE_REPUTATION, MIN_REPUTATION, MAX_REPUTATION,
)

logger = logging.getLogger('gigledger.reputation')

DEFAULT_DELTAS = {
    ReputationEventType.TASK_COMPLETED: 10,
    ReputationEventType.TASK_LATE: -5,
    ReputationEventType.DISPUTE_FILED: -20,
    ReputationEventType.DISPUTE_RESOLVED: 10,
}
QUALITY_COMPLETION_BONUS = 15

GRADES = (
    (900, 'Platinum'),
    (800, 'Gold'),
    (600, 'Silver'),
    (400, 'Bronze'),
)


def clamp_score(raw: int) -> int:
    return max(MIN_REPUTATION, min(MAX_REPUTATION, int(raw)))


def grade(score: int) -> str:
    for floor, name in GRADES:
        if score >= floor:
            return name
    return 'Starter'


def rating_delta(stars: int) -> int:
    """Five stars +10, three stars 0, one star -10."""
    return (int(stars) - 3) * 5


class ReputationService:
    def __init__(self, ctx):
        self.ctx = ctx

    @property
    def ledger(self):
        return self.ctx.ledger

    def record(self, worker, event_type, points_delta=None, task_id=None, description=None,
               triggered_by='system', favorable=True, extra=None, now=None):
        """Append one event and move the live score. Caller holds the worker scope."""
        if not isinstance(event_type, ReputationEventType):
            try:
                event_type = ReputationEventType(event_type)
            except ValueError:
                raise ValidationError("Unknown reputation event type", event_type=event_type)
        delta = self._delta(event_type, points_delta, description, triggered_by, favorable)

        raw_before = BASE_REPUTATION + self.ledger.reputation_delta_sum(worker.id)
        previous, new = clamp_score(raw_before), clamp_score(raw_before + delta)
        event = ReputationEvent(
            worker_id=worker.id,
            task_id=task_id,
            event_type=event_type,
            points_delta=delta,
            previous_score=previous,
            new_score=new,
            description=description,
            triggered_by=triggered_by,
            created_at=self.ctx.now(now),
            extra=dict(extra or {}),
        )
        self.ledger.add(event)
        worker.reputation_score = new
        self.ledger.flush()
        logger.info("Reputation %s for %s: %+d (%d -> %d)",
                    event_type.value, worker.id, delta, previous, new)
        return event

    @staticmethod
    def _delta(event_type, points_delta, description, triggered_by, favorable):
        if event_type == ReputationEventType.MANUAL_ADJUSTMENT:
            if not isinstance(points_delta, int) or isinstance(points_delta, bool):
                raise ValidationError("Manual adjustment requires an integer points_delta")
            if not triggered_by or triggered_by == 'system':
                raise ValidationError("Manual adjustment requires an actor")
            if not (description or '').strip():
                raise ValidationError("Manual adjustment requires a reason")
            return points_delta
        if points_delta is not None:
            return int(points_delta)
        if event_type == ReputationEventType.DISPUTE_RESOLVED and not favorable:
            return 0
        if event_type in DEFAULT_DELTAS:
            return DEFAULT_DELTAS[event_type]
        raise ValidationError("points_delta is required", event_type=event_type.value)

    def record_event(self, worker_id, event_type, points_delta=None, task_id=None, description=None,
                     triggered_by='system', favorable=True, extra=None, now=None):
        """Standalone entry point; opens its own worker scope."""
        system = triggered_by == 'system'
        with self.ledger.worker_scope(worker_id) as worker:
            event = self.record(worker, event_type, points_delta=points_delta, task_id=task_id,
                                description=description, triggered_by=triggered_by,
                                favorable=favorable, extra=extra, now=now)
            self.ledger.audit(f'reputation.{event.event_type.value}', resource=worker,
                              after=snapshot(event),
                              actor_type='system' if system else 'operator',
                              actor_id=None if system else triggered_by)
        return event

    def record_task_completion(self, worker, task, ratings, now):
        """Events for one completed task, written in the caller's unit of work."""
        stars = (ratings or {}).get('stars')
        quality = stars is not None and stars >= self.ctx.config.REPUTATION_QUALITY_STARS
        events = [self.record(
            worker, ReputationEventType.TASK_COMPLETED,
            points_delta=QUALITY_COMPLETION_BONUS if quality else None,
            task_id=task.id, description=f"Completed task {task.title}", now=now,
        )]
        if stars is not None:
            events.append(self.record(
                worker, ReputationEventType.RATING_RECEIVED, points_delta=rating_delta(stars),
                task_id=task.id, description=f"Rated {stars}/5", extra={'rating': stars}, now=now,
            ))
        if task.due_date and now > task.due_date:
            events.append(self.record(
                worker, ReputationEventType.TASK_LATE, task_id=task.id,
                description=f"Completed {now - task.due_date} after due date", now=now,
            ))
        return events

    def replay_score(self, worker_id) -> int:
        """Score recomputed from the event log alone."""
        return clamp_score(BASE_REPUTATION + sum(
            e.points_delta for e in self.ledger.reputation_events(worker_id)
        ))

    def rebuild_score(self, worker_id, actor_id=None) -> int:
        with self.ledger.worker_scope(worker_id) as worker:
            before = worker.reputation_score
            score = self.replay_score(worker_id)
            worker.reputation_score = score
            self.ledger.audit('reputation.rebuild', resource=worker,
                              before={'reputation_score': before}, after={'reputation_score': score},
                              actor_type='operator' if actor_id else 'system', actor_id=actor_id)
        if before != score:
            logger.warning("Reputation for %s drifted: stored %s, replayed %s", worker_id, before, score)
        return score

    def ratings(self, worker_id):
        return [
            e.extra['rating'] for e in self.ledger.reputation_events(worker_id)
            if e.event_type == ReputationEventType.RATING_RECEIVED and (e.extra or {}).get('rating')
        ]

    def breakdown(self, worker_id) -> dict:
        worker = self.ledger.require_worker(worker_id)
        events = self.ledger.reputation_events(worker_id)
        by_type = {t.value: {"count": 0, "points": 0} for t in ReputationEventType}
        for e in events:
            by_type[e.event_type.value]["count"] += 1
            by_type[e.event_type.value]["points"] += e.points_delta
        return {
            "worker_id": worker.id,
            "score": worker.reputation_score,
            "grade": grade(worker.reputation_score),
            "event_count": len(events),
            "by_type": by_type,
            "recent": [{
                "event_type": e.event_type.value,
                "points_delta": e.points_delta,
                "previous_score": e.previous_score,
                "new_score": e.new_score,
                "task_id": e.task_id,
                "description": e.description,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            } for e in events[-10:]],
        }
