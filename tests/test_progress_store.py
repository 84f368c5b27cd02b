"""Tests for progress_store.py — the ProgressLedger."""

from __future__ import annotations

import json

import pytest

from kv_store import MemoryStore, StoreCapacityError
from progress_store import ProgressLedger, SCHEMA_VERSION


class UndecodableStore(MemoryStore):
    """MemoryStore whose reads hit bytes that are not valid UTF-8."""

    def get(self, key: str) -> str | None:
        raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")


class FlakyStore(MemoryStore):
    """MemoryStore whose next `fail_next` writes raise StoreCapacityError."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_next = 0

    def set(self, key: str, value: str) -> None:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise StoreCapacityError("quota exceeded")
        super().set(key, value)


# ── Bootstrap ──────────────────────────────────────────────


class TestBootstrap:
    def test_default_state(self, ledger):
        progress = ledger.get_progress()
        assert progress.total_xp == 0
        assert progress.level == 1
        assert progress.credit_balance == 500
        assert progress.total_credits_earned == 500
        assert progress.current_streak == 0
        assert progress.weekly_goal_minutes == 300

    def test_bootstrap_is_idempotent(self, store, clock):
        first = ProgressLedger(store, user_id="u1", clock=clock).get_progress()
        clock.advance(minutes=5)
        second = ProgressLedger(store, user_id="u1", clock=clock).get_progress()
        assert second.created_at == first.created_at
        assert second.credit_balance == 500

    def test_version_marker_written(self, ledger, store):
        assert store.get("u1:reward-system-version") == SCHEMA_VERSION

    def test_keys_are_per_user(self, store, clock):
        a = ProgressLedger(store, user_id="a", clock=clock)
        b = ProgressLedger(store, user_id="b", clock=clock)
        a.add_xp(50)
        assert b.get_total_xp() == 0
        assert store.get("a:unified-progress") is not None

    def test_get_progress_returns_copy(self, ledger):
        snapshot = ledger.get_progress()
        snapshot.credit_balance = 0
        assert ledger.get_credit_balance() == 500


# ── XP & Level ─────────────────────────────────────────────


class TestXP:
    def test_level_up(self, ledger):
        result = ledger.add_xp(100)
        assert result.new_xp == 100
        assert result.old_level == 1
        assert result.new_level == 2
        assert result.leveled_up is True

    def test_no_level_up(self, ledger):
        result = ledger.add_xp(10)
        assert result.leveled_up is False
        assert ledger.get_level() == 1

    def test_negative_xp_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.add_xp(-1)

    def test_level_never_decreases(self, ledger):
        previous = ledger.get_level()
        for amount in (0, 99, 1, 150, 0, 5000, 40000):
            ledger.add_xp(amount)
            assert ledger.get_level() >= previous
            previous = ledger.get_level()

    def test_level_cannot_be_set_directly(self, ledger):
        with pytest.raises(ValueError):
            ledger.update_progress(level=10)

    def test_level_follows_total_xp_update(self, ledger):
        ledger.update_progress(total_xp=300)
        assert ledger.get_level() == 3

    def test_unknown_field(self, ledger):
        with pytest.raises(AttributeError):
            ledger.update_progress(shoe_size=9)


# ── Credits ────────────────────────────────────────────────


class TestCredits:
    def test_spend_success(self, ledger):
        result = ledger.spend_credits(200)
        assert result.success is True
        assert result.balance == 300
        assert ledger.get_progress().total_credits_spent == 200

    def test_spend_more_than_balance(self, ledger):
        result = ledger.spend_credits(501)
        assert result.success is False
        assert result.balance == 500

    def test_spend_negative_rejected(self, ledger):
        assert ledger.spend_credits(-5).success is False
        assert ledger.get_credit_balance() == 500

    @pytest.mark.parametrize("amount", [0, 1, 250, 499, 500, 501, 10_000])
    def test_spend_never_negative(self, ledger, amount):
        ledger.spend_credits(amount)
        assert ledger.get_credit_balance() >= 0

    def test_penalty_clamped_at_zero(self, ledger):
        ledger.spend_credits(480)
        assert ledger.add_credits(-50) == 0
        assert ledger.get_progress().total_credits_spent == 500

    def test_add_credits(self, ledger):
        assert ledger.add_credits(25) == 525
        assert ledger.get_progress().total_credits_earned == 525

    def test_can_afford(self, ledger):
        assert ledger.can_afford(500)
        assert not ledger.can_afford(501)


# ── Counters ───────────────────────────────────────────────


class TestCounters:
    def test_increment_progress(self, ledger):
        ledger.increment_progress("questions_completed")
        ledger.increment_progress("questions_completed", 2)
        assert ledger.get_progress().questions_completed == 3

    def test_increment_ignores_non_numeric_and_derived(self, ledger):
        ledger.increment_progress("channels_explored")
        ledger.increment_progress("level", 5)
        ledger.increment_progress("total_xp", 5)
        ledger.increment_progress("no_such_counter")
        progress = ledger.get_progress()
        assert progress.channels_explored == []
        assert progress.level == 1
        assert progress.total_xp == 0

    def test_credit_balance_cannot_go_negative(self, ledger):
        with pytest.raises(ValueError):
            ledger.increment_progress("credit_balance", -1000)
        assert ledger.get_credit_balance() == 500

    def test_invalid_update_applies_nothing(self, ledger):
        with pytest.raises(ValueError):
            ledger.update_progress(questions_completed=3, current_streak=-1)
        with pytest.raises(ValueError):
            ledger.update_progress(srs_reviews="many")
        progress = ledger.get_progress()
        assert progress.questions_completed == 0
        assert progress.current_streak == 0
        assert progress.srs_reviews == 0

    def test_channels(self, ledger):
        assert ledger.track_channel_explored("system-design") is True
        assert ledger.track_channel_explored("system-design") is False
        ledger.update_channel_progress("system-design", 1)
        ledger.update_channel_progress("system-design", 2)
        assert ledger.get_progress().channel_progress == {"system-design": 3}

    def test_session_reset(self, ledger):
        ledger.increment_session_questions()
        ledger.increment_session_questions()
        ledger.start_session()
        assert ledger.get_progress().current_session_questions == 0

    def test_daily_counter_rolls_over(self, ledger, clock):
        ledger.increment_today_questions()
        assert ledger.increment_today_questions() == 2
        clock.advance(days=1)
        assert ledger.increment_today_questions() == 1

    def test_weekly_counter_rolls_over_on_new_iso_week(self, ledger, clock):
        ledger.increment_this_week_questions()
        clock.advance(days=2)  # Friday, same week
        assert ledger.increment_this_week_questions() == 2
        clock.advance(days=3)  # Monday
        assert ledger.increment_this_week_questions() == 1

    def test_weekly_practice_time(self, ledger, clock):
        ledger.add_practice_time(600)
        ledger.add_practice_time(-30)
        assert ledger.weekly_practice_seconds() == 600
        clock.advance(days=7)
        assert ledger.weekly_practice_seconds() == 0


# ── Streaks ────────────────────────────────────────────────


class TestLedgerStreak:
    def test_consecutive_days(self, ledger, clock):
        assert ledger.update_streak().current_streak == 1
        clock.advance(days=1)
        result = ledger.update_streak()
        assert result.current_streak == 2
        assert result.is_new_day is True

    def test_same_day_noop(self, ledger):
        ledger.update_streak()
        result = ledger.update_streak()
        assert result.is_new_day is False
        assert ledger.get_current_streak() == 1

    def test_gap_breaks_but_keeps_longest(self, ledger, clock):
        for _ in range(3):
            ledger.update_streak()
            clock.advance(days=1)
        clock.advance(days=1)
        result = ledger.update_streak()
        assert result.streak_broken is True
        progress = ledger.get_progress()
        assert progress.current_streak == 1
        assert progress.longest_streak == 3


# ── Question progress ──────────────────────────────────────


class TestQuestionProgress:
    def test_record_attempt_creates_record(self, ledger):
        record = ledger.record_attempt("q1", 85)
        assert record.id == "u1-q1"
        assert record.repetitions == 1
        assert ledger.get_question_progress("q1").attempts == 1

    def test_mastery_rate_zero_without_records(self, ledger):
        assert ledger.mastery_rate() == 0

    def test_due_for_review(self, ledger, clock):
        ledger.record_attempt("q1", 85)
        ledger.record_attempt("q2", 40)
        assert ledger.due_for_review() == []
        clock.advance(days=1)
        assert {r.question_id for r in ledger.due_for_review()} == {"q1", "q2"}

    def test_question_progress_persists(self, store, clock, ledger):
        ledger.record_attempt("q1", 95)
        reloaded = ProgressLedger(store, user_id="u1", clock=clock)
        assert reloaded.get_question_progress("q1").best_score == 95

    def test_question_progress_isolated_per_user(self, store, clock, ledger):
        ledger.record_attempt("q1", 95)
        other = ProgressLedger(store, user_id="u2", clock=clock)
        assert other.get_question_progress("q1") is None


# ── Notifications ──────────────────────────────────────────


class TestNotifications:
    def test_most_recent_first(self, ledger):
        ledger.add_notification("xp", "XP", "first")
        ledger.add_notification("xp", "XP", "second")
        assert [n.message for n in ledger.get_notifications()] == ["second", "first"]

    def test_defaults_from_type(self, ledger):
        notif = ledger.add_notification("level_up", "Level Up!", "You reached level 2!")
        assert notif.icon == "trophy"
        assert notif.color == "#ffd700"

    def test_capped_at_fifty(self, ledger):
        for i in range(60):
            ledger.add_notification("xp", "XP", str(i))
        notifications = ledger.get_notifications()
        assert len(notifications) == 50
        assert notifications[0].message == "59"

    def test_dismiss_and_clear(self, ledger):
        notif = ledger.add_notification("xp", "XP", "hello")
        ledger.dismiss_notification(notif.id)
        assert ledger.get_notifications()[0].dismissed is True
        ledger.clear_notifications()
        assert ledger.get_notifications() == []


# ── Corruption & degraded persistence ──────────────────────


class TestRecovery:
    def test_unparseable_progress_resets(self, store, clock):
        store.set("u1:unified-progress", "{not json")
        ledger = ProgressLedger(store, user_id="u1", clock=clock)
        assert ledger.recovered_from_corruption is True
        assert ledger.get_credit_balance() == 500

    def test_wrong_shape_resets(self, store, clock):
        store.set("u1:unified-progress", json.dumps({"total_xp": "lots"}))
        ledger = ProgressLedger(store, user_id="u1", clock=clock)
        assert ledger.recovered_from_corruption is True
        assert ledger.get_total_xp() == 0

    def test_undecodable_progress_file_resets(self, tmp_path, clock):
        from kv_store import JsonFileStore
        store = JsonFileStore(tmp_path)
        ProgressLedger(store, user_id="u1", clock=clock).add_xp(300)
        store._path("u1:unified-progress").write_bytes(b"\xff\xfe garbage")
        ledger = ProgressLedger(store, user_id="u1", clock=clock)
        assert ledger.get_total_xp() == 0
        assert ledger.get_credit_balance() == 500

    def test_store_decode_errors_do_not_escape(self, clock):
        ledger = ProgressLedger(UndecodableStore(), user_id="u1", clock=clock)
        assert ledger.recovered_from_corruption is True
        assert ledger.get_credit_balance() == 500

    def test_mistyped_question_record_discarded(self, store, clock):
        store.set("u1:question-progress", json.dumps({"q1": {"question_id": "q1", "ease_factor": "high"}}))
        ledger = ProgressLedger(store, user_id="u1", clock=clock)
        assert ledger.recovered_from_corruption is True
        assert ledger.get_question_progress("q1") is None
        assert ledger.record_attempt("q1", 90).repetitions == 1

    def test_corrupt_notifications_discarded(self, store, clock):
        store.set("u1:reward-notifications", json.dumps([{"bogus": 1}]))
        ledger = ProgressLedger(store, user_id="u1", clock=clock)
        assert ledger.get_notifications() == []

    def test_failed_write_trims_history_and_retries(self, clock):
        store = FlakyStore()
        ledger = ProgressLedger(store, user_id="u1", clock=clock)
        for i in range(30):
            ledger.add_notification("xp", "XP", str(i))

        store.fail_next = 1
        ledger.add_credits(10)

        assert ledger.persistence_degraded is False
        assert len(ledger.get_notifications()) == 20
        assert json.loads(store.get("u1:unified-progress"))["credit_balance"] == 510

    def test_persistent_failure_degrades_without_raising(self, clock):
        store = MemoryStore(quota_bytes=10)
        ledger = ProgressLedger(store, user_id="u1", clock=clock)
        ledger.add_credits(10)
        ledger.add_xp(150)
        assert ledger.persistence_degraded is True
        assert ledger.get_credit_balance() == 510
        assert ledger.get_level() == 2


# ── Export / import ────────────────────────────────────────


class TestExportImport:
    def test_export_shape(self, ledger):
        data = json.loads(ledger.export_data())
        assert set(data) >= {"progress", "notifications", "version", "exported_at"}
        assert data["version"] == SCHEMA_VERSION

    def test_round_trip(self, ledger, clock):
        ledger.add_xp(260)
        ledger.record_attempt("q1", 85)
        ledger.add_notification("xp", "XP", "hi")
        blob = ledger.export_data()

        fresh = ProgressLedger(MemoryStore(), user_id="u1", clock=clock)
        assert fresh.import_data(blob) is True
        assert fresh.get_total_xp() == 260
        assert fresh.get_level() == 3
        assert fresh.get_question_progress("q1").repetitions == 1
        assert len(fresh.get_notifications()) == 1

    def test_level_recomputed_on_import(self, ledger):
        blob = json.dumps({"progress": {"total_xp": 300, "level": 9}})
        assert ledger.import_data(blob) is True
        assert ledger.get_level() == 3

    @pytest.mark.parametrize("blob", [
        "not json",
        "[]",
        json.dumps({"notifications": []}),
        json.dumps({"progress": {"total_xp": -5}}),
        json.dumps({"progress": {"credit_balance": True}}),
        json.dumps({"progress": {"last_activity_date": "yesterday"}}),
        json.dumps({"progress": {}, "notifications": "nope"}),
        json.dumps({"progress": {}, "questions": {"q1": {"question_id": "q1", "status": "bogus"}}}),
        json.dumps({"progress": {}, "questions": {"q1": {"question_id": "q1", "ease_factor": "high"}}}),
        json.dumps({"progress": {}, "questions": {"q1": {"question_id": "q1", "interval": 0}}}),
        json.dumps({"progress": {}, "questions": {"q1": {"question_id": "q1", "mastered": 1}}}),
    ])
    def test_malformed_rejected_without_partial_apply(self, ledger, blob):
        ledger.add_xp(40)
        assert ledger.import_data(blob) is False
        assert ledger.get_total_xp() == 40

    def test_offset_timestamps_rejected(self, ledger):
        ledger.record_attempt("q1", 85)
        blob = json.loads(ledger.export_data())
        blob["questions"]["q1"]["next_review"] = "2026-01-01T00:00:00+00:00"
        assert ledger.import_data(json.dumps(blob)) is False
        assert ledger.due_for_review() == []
        assert ledger.get_question_progress("q1").next_review == "2026-03-12T10:00:00"

    def test_reset_all(self, ledger):
        ledger.add_xp(500)
        ledger.record_attempt("q1", 90)
        ledger.add_notification("xp", "XP", "hi")
        ledger.reset_all()
        assert ledger.get_total_xp() == 0
        assert ledger.get_credit_balance() == 500
        assert ledger.all_question_progress() == []
        assert ledger.get_notifications() == []
