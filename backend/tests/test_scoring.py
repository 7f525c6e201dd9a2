"""
Tests for integrity scoring, timeline and episode segmentation
"""
import pytest

from focus_proctor.models.detection_models import EventType, ProctorEvent, ReportCountsByType
from focus_proctor.utils.scoring import (
    PENALTIES,
    build_integrity_report,
    build_integrity_timeline,
    compute_integrity_score,
    count_events_by_type,
    segment_episodes,
)


def ev(ts, event_type):
    return ProctorEvent(ts=ts, type=event_type)


class TestIntegrityScore:
    """Tests for compute_integrity_score"""

    def test_counts_and_score(self):
        """Test one look-away, one no-face and one phone give 65"""
        events = [
            ev(1, EventType.LOOKING_AWAY),
            ev(2, EventType.NO_FACE),
            ev(3, EventType.PHONE_DETECTED),
        ]
        counts = count_events_by_type(events)

        assert counts["LookingAway"] == 1
        assert counts["NoFace"] == 1
        assert counts["PhoneDetected"] == 1
        assert compute_integrity_score(counts) == 65

    def test_counts_always_have_every_type(self):
        counts = count_events_by_type([])
        assert set(counts) == {t.value for t in EventType}
        assert all(v == 0 for v in counts.values())

    def test_unknown_types_are_ignored(self):
        counts = count_events_by_type([{"ts": 1, "type": "Sneezing"}, {"ts": 2, "type": "NoFace"}])
        assert counts["NoFace"] == 1
        assert sum(counts.values()) == 1

    def test_missing_keys_count_as_zero(self):
        assert compute_integrity_score({"PhoneDetected": 2}) == 60
        assert compute_integrity_score({}) == 100

    def test_accepts_report_counts_model(self):
        assert compute_integrity_score(ReportCountsByType(MultipleFaces=2)) == 70

    def test_clamped_at_zero(self):
        assert compute_integrity_score({"PhoneDetected": 10}) == 0

    @pytest.mark.parametrize("event_type", list(EventType))
    def test_score_never_increases(self, event_type):
        """Test any additional event lowers or keeps the score"""
        counts = {t.value: 1 for t in EventType}
        before = compute_integrity_score(counts)
        counts[event_type.value] += 1
        after = compute_integrity_score(counts)

        assert 0 <= after <= before <= 100

    def test_one_penalty_per_event_type(self):
        assert set(PENALTIES) == set(EventType)


class TestIntegrityTimeline:
    """Tests for build_integrity_timeline"""

    def test_timeline_scores(self):
        events = [ev(2000, EventType.LOOKING_AWAY), ev(3000, EventType.NO_FACE)]
        timeline = build_integrity_timeline(events, 1000, 4000)

        assert timeline[0].ts == 1000
        assert timeline[-1].ts == 4000
        assert [p.score for p in timeline] == [100, 95, 85, 85]

    def test_events_sorted_by_timestamp(self):
        events = [ev(3000, EventType.NO_FACE), ev(2000, EventType.LOOKING_AWAY)]
        timeline = build_integrity_timeline(events, 1000, 4000)

        assert [p.ts for p in timeline] == [1000, 2000, 3000, 4000]

    def test_equal_timestamps_not_collapsed(self):
        events = [ev(2000, EventType.NOTES_DETECTED), ev(2000, EventType.NOTES_DETECTED)]
        timeline = build_integrity_timeline(events, 1000, 3000)

        assert [p.score for p in timeline] == [100, 90, 80, 80]

    def test_empty_session(self):
        timeline = build_integrity_timeline([], 1000, 2000)
        assert [(p.ts, p.score) for p in timeline] == [(1000, 100), (2000, 100)]


class TestEpisodes:
    """Tests for segment_episodes"""

    def test_gap_at_least_cooldown_starts_new_episode(self):
        t = lambda n: 1000 + n * 1000
        events = [
            ev(t(0), EventType.LOOKING_AWAY),
            ev(t(1), EventType.LOOKING_AWAY),
            ev(t(4), EventType.LOOKING_AWAY),
        ]
        episodes = segment_episodes(events, 1500)

        assert len(episodes) == 2
        assert (episodes[0].started_at, episodes[0].ended_at, episodes[0].count) == (t(0), t(1), 2)
        assert (episodes[1].started_at, episodes[1].ended_at, episodes[1].count) == (t(4), t(4), 1)

    def test_types_are_segmented_independently(self):
        events = [
            ev(1000, EventType.NO_FACE),
            ev(1500, EventType.PHONE_DETECTED),
            ev(2000, EventType.NO_FACE),
            ev(9000, EventType.NO_FACE),
        ]
        episodes = segment_episodes(events, 1500)
        by_type = {}
        for episode in episodes:
            by_type[episode.type] = by_type.get(episode.type, 0) + 1

        assert by_type == {EventType.NO_FACE: 2, EventType.PHONE_DETECTED: 1}


class TestIntegrityReport:
    """Tests for build_integrity_report"""

    def test_report(self):
        events = [ev(2000, EventType.EXTRA_DEVICE_DETECTED)]
        report = build_integrity_report("abc", events, 1000, 5000)

        assert report.session_id == "abc"
        assert report.integrity_score == 85
        assert report.counts_by_type.ExtraDeviceDetected == 1
        assert report.duration_ms == 4000
        dumped = report.model_dump(by_alias=True)
        assert set(dumped) == {"sessionId", "integrityScore", "countsByType", "durationMs", "timeline"}

    def test_end_before_start_is_clamped(self):
        report = build_integrity_report("abc", [], 5000, 1000)

        assert report.duration_ms == 0
        assert report.timeline[-1].ts == 5000
