"""Tests for medminder.core.dose_state — DoseStateMachine transitions."""

from datetime import datetime
from unittest.mock import patch

import pytest

from medminder.core.dose_state import DoseStateMachine
from medminder.data.models import DoseMethod, DoseStatus
from medminder.ports.storage_port import PersistenceError


@pytest.fixture
def machine(schedule_store, record_store, clock):
    return DoseStateMachine(schedule_store, record_store, clock=clock)


@pytest.fixture
def med(schedule_store, metformin):
    schedule_store.add_medication(metformin)
    return metformin


def _slot(schedule_store, med, index=0):
    return schedule_store.get_medication(med.id).schedule[index]


class TestMarkTaken:
    def test_sets_flag_and_timestamp(self, machine, schedule_store, med, clock):
        clock.set(datetime(2024, 1, 10, 8, 3))
        result = machine.mark_taken(med.id, med.schedule[0].id)

        assert result.taken is True
        assert result.taken_at == datetime(2024, 1, 10, 8, 3)
        stored = _slot(schedule_store, med)
        assert stored.taken is True
        assert stored.skipped is False

    def test_appends_taken_record(self, machine, record_store, med, clock):
        clock.set(datetime(2024, 1, 10, 8, 3))
        machine.mark_taken(med.id, med.schedule[0].id, method=DoseMethod.VOICE)

        [record] = record_store.list_records()
        assert record.status is DoseStatus.TAKEN
        assert record.scheduled_time == datetime(2024, 1, 10, 8, 0)
        assert record.taken_time == datetime(2024, 1, 10, 8, 3)
        assert record.method is DoseMethod.VOICE
        assert record.medication_name == "Metformin"

    def test_other_slot_untouched(self, machine, schedule_store, med):
        machine.mark_taken(med.id, med.schedule[0].id)
        assert _slot(schedule_store, med, 1).is_pending

    def test_repeat_take_records_once(self, machine, schedule_store, record_store, med, clock):
        clock.set(datetime(2024, 1, 10, 8, 3))
        machine.mark_taken(med.id, med.schedule[0].id)
        clock.set(datetime(2024, 1, 10, 8, 40))
        again = machine.mark_taken(med.id, med.schedule[0].id)

        assert again.taken_at == datetime(2024, 1, 10, 8, 3)
        assert _slot(schedule_store, med).taken_at == datetime(2024, 1, 10, 8, 3)
        assert len(record_store.list_records()) == 1

    def test_repeat_skip_records_once(self, machine, record_store, med):
        machine.mark_skipped(med.id, med.schedule[1].id, reason="nausea")
        assert machine.mark_skipped(med.id, med.schedule[1].id).skipped is True
        assert [r.status for r in record_store.list_records()] == [DoseStatus.SKIPPED]


class TestMarkSkipped:
    def test_sets_skipped_with_reason(self, machine, record_store, schedule_store, med):
        result = machine.mark_skipped(med.id, med.schedule[1].id, reason="felt sick")
        assert result.skipped is True
        assert _slot(schedule_store, med, 1).skipped is True

        [record] = record_store.list_records()
        assert record.status is DoseStatus.SKIPPED
        assert record.notes == "felt sick"
        assert record.taken_time is None

    def test_skip_after_take_clears_taken(self, machine, schedule_store, med):
        slot_id = med.schedule[0].id
        machine.mark_taken(med.id, slot_id)
        machine.mark_skipped(med.id, slot_id)

        stored = _slot(schedule_store, med)
        assert stored.skipped is True
        assert stored.taken is False
        assert stored.taken_at is None

    def test_take_after_skip_clears_skipped(self, machine, schedule_store, med):
        slot_id = med.schedule[0].id
        machine.mark_skipped(med.id, slot_id)
        machine.mark_taken(med.id, slot_id)

        stored = _slot(schedule_store, med)
        assert stored.taken is True
        assert stored.skipped is False
        assert stored.skipped_at is None


class TestUndo:
    def test_returns_to_pending(self, machine, schedule_store, med):
        slot_id = med.schedule[0].id
        machine.mark_taken(med.id, slot_id)
        result = machine.undo(med.id, slot_id)
        assert result.is_pending
        assert _slot(schedule_store, med).taken_at is None

    def test_history_is_kept(self, machine, record_store, med):
        slot_id = med.schedule[0].id
        machine.mark_taken(med.id, slot_id)
        machine.undo(med.id, slot_id)
        assert len(record_store.list_records()) == 1


class TestUnknownIds:
    def test_unknown_medication_is_noop(self, machine, record_store, med):
        assert machine.mark_taken("nope", med.schedule[0].id) is None
        assert record_store.list_records() == []

    def test_unknown_slot_is_noop(self, machine, schedule_store, record_store, med):
        assert machine.mark_skipped(med.id, "nope") is None
        assert all(s.is_pending for s in schedule_store.get_medication(med.id).schedule)
        assert record_store.list_records() == []


class TestPersistenceFailure:
    def test_write_failure_returns_none(self, machine, schedule_store, record_store, med):
        with patch.object(schedule_store, "save_all", side_effect=PersistenceError("disk full")):
            assert machine.mark_taken(med.id, med.schedule[0].id) is None
        assert record_store.list_records() == []
        assert _slot(schedule_store, med).is_pending
