"""Integrity scoring over a session's event log. Pure functions, no I/O."""

from typing import Dict, Iterable, List, Mapping, Optional, Union

from ..models.detection_models import (
    EventEpisode,
    EventType,
    IntegrityReport,
    IntegrityTimelinePoint,
    ProctorEvent,
    ReportCountsByType,
)

# Points deducted per event; one entry per EventType
PENALTIES: Dict[EventType, int] = {
    EventType.LOOKING_AWAY: 5,
    EventType.NO_FACE: 10,
    EventType.MULTIPLE_FACES: 15,
    EventType.PHONE_DETECTED: 20,
    EventType.NOTES_DETECTED: 10,
    EventType.EXTRA_DEVICE_DETECTED: 15,
}

MAX_SCORE = 100

EventLike = Union[ProctorEvent, Mapping]


def _event_type(event: EventLike) -> Optional[EventType]:
    raw = event.get("type") if isinstance(event, Mapping) else event.type
    try:
        return EventType(raw)
    except ValueError:
        return None


def _event_ts(event: EventLike) -> int:
    return int(event["ts"] if isinstance(event, Mapping) else event.ts)


def empty_counts() -> Dict[str, int]:
    return {event_type.value: 0 for event_type in EventType}


def compute_integrity_score(counts: Union[Mapping[str, int], ReportCountsByType]) -> int:
    """100 minus the weighted event penalty, clamped to [0, 100]"""
    if isinstance(counts, ReportCountsByType):
        counts = counts.model_dump()
    penalty = sum(weight * counts.get(event_type.value, 0) for event_type, weight in PENALTIES.items())
    return max(0, min(MAX_SCORE, MAX_SCORE - penalty))


def count_events_by_type(events: Iterable[EventLike]) -> Dict[str, int]:
    """Tally events per type; every type is present, unknown types are ignored"""
    counts = empty_counts()
    for event in events:
        event_type = _event_type(event)
        if event_type is not None:
            counts[event_type.value] += 1
    return counts


def build_integrity_timeline(events: Iterable[EventLike], started_at: int, ended_at: int) -> List[IntegrityTimelinePoint]:
    """Running score: a point at start, one per event in ts order, one at end"""
    ordered = sorted(events, key=_event_ts)
    running = empty_counts()

    points = [IntegrityTimelinePoint(ts=started_at, score=MAX_SCORE)]
    for event in ordered:
        event_type = _event_type(event)
        if event_type is not None:
            running[event_type.value] += 1
        points.append(IntegrityTimelinePoint(ts=_event_ts(event), score=compute_integrity_score(running)))
    points.append(IntegrityTimelinePoint(ts=ended_at, score=compute_integrity_score(running)))
    return points


def segment_episodes(events: Iterable[EventLike], cooldown_ms: int) -> List[EventEpisode]:
    """Group same-type events; a gap of at least `cooldown_ms` starts a new episode"""
    ordered = sorted(events, key=_event_ts)
    episodes: List[EventEpisode] = []
    last_by_type: Dict[EventType, EventEpisode] = {}

    for event in ordered:
        event_type = _event_type(event)
        if event_type is None:
            continue
        ts = _event_ts(event)
        last = last_by_type.get(event_type)

        if last is None or ts - last.ended_at >= cooldown_ms:
            episode = EventEpisode(type=event_type, started_at=ts, ended_at=ts, count=1)
            last_by_type[event_type] = episode
            episodes.append(episode)
        else:
            last.ended_at = ts
            last.count += 1

    return episodes


def build_integrity_report(session_id: str, events: List[EventLike], started_at: int,
                           ended_at: int) -> IntegrityReport:
    """Full report for a session; an end before the start is clamped to the start"""
    ended_at = max(started_at, ended_at)
    counts = count_events_by_type(events)

    return IntegrityReport(
        session_id=session_id,
        integrity_score=compute_integrity_score(counts),
        counts_by_type=ReportCountsByType(**counts),
        duration_ms=ended_at - started_at,
        timeline=build_integrity_timeline(events, started_at, ended_at),
    )
