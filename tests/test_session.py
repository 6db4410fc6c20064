from callcore.session import CallSession, DecisionRecord, SlotSet
from callcore.states import Lane


class TestSlotSet:
    def test_set_pending_stores_value(self):
        slots = SlotSet()
        assert slots.set_pending("name", "Bob Smith") is True
        assert slots.pending == {"name": "Bob Smith"}
        assert slots.confirmed == {}

    def test_set_pending_ignores_empty_and_unchanged(self):
        slots = SlotSet()
        slots.set_pending("name", "Bob Smith")
        assert slots.set_pending("name", "Bob Smith") is False
        assert slots.set_pending("name", "") is False

    def test_set_pending_same_as_confirmed_is_noop(self):
        slots = SlotSet(confirmed={"name": "Bob Smith"})
        assert slots.set_pending("name", "Bob Smith") is False
        assert "name" not in slots.pending

    def test_correction_to_confirmed_value_goes_back_to_pending(self):
        slots = SlotSet(confirmed={"address": "123 Oak St"})
        assert slots.set_pending("address", "456 Elm St") is True
        assert slots.pending["address"] == "456 Elm St"
        assert not slots.is_settled("address")

    def test_confirm_promotes_only_pending(self):
        slots = SlotSet(pending={"name": "Bob", "address": "123 Oak St"})
        promoted = slots.confirm(["name", "zip"])
        assert promoted == ["name"]
        assert slots.confirmed == {"name": "Bob"}
        assert slots.pending == {"address": "123 Oak St"}

    def test_reject_drops_pending(self):
        slots = SlotSet(pending={"name": "Bob"})
        slots.reject(["name"])
        assert not slots.has_value("name")

    def test_skip_marks_settled(self):
        slots = SlotSet(pending={"name": "Bob"})
        slots.skip("name")
        assert slots.skipped == ["name"]
        assert "name" not in slots.pending
        assert slots.is_settled("name")

    def test_new_value_unskips(self):
        slots = SlotSet(skipped=["name"])
        slots.set_pending("name", "Bob")
        assert slots.skipped == []

    def test_value_prefers_pending(self):
        slots = SlotSet(pending={"address": "new"}, confirmed={"address": "old"})
        assert slots.value("address") == "new"
        assert slots.value("name") == ""


class TestCallSession:
    def test_defaults(self):
        s = CallSession(call_id="c1", tenant_id="acme")
        assert s.lane == Lane.DISCOVERY
        assert s.turn_count == 0
        assert s.decisions == []

    def test_record_stamps_current_turn(self):
        s = CallSession(call_id="c1", tenant_id="acme")
        s.turn_count = 2
        rec = s.record("triage", False, "skipped", "triage_disabled")
        assert rec.turn == 2
        assert rec.attempted is False
        assert s.decisions == [rec]

    def test_decision_returns_latest_for_stage(self):
        s = CallSession(call_id="c1", tenant_id="acme")
        s.turn_count = 1
        s.record("slot_confirmation", True, "requested")
        s.turn_count = 2
        s.record("slot_confirmation", True, "unanswered")
        s.record("slot_confirmation", True, "confirmed")
        assert s.decision("slot_confirmation").outcome == "confirmed"
        assert s.decision("slot_confirmation", turn=1).outcome == "requested"
        assert s.decision("triage") is None

    def test_turn_decisions_filters_by_turn(self):
        s = CallSession(call_id="c1", tenant_id="acme")
        s.turn_count = 1
        s.record("triggers", True, "none")
        s.turn_count = 2
        s.record("triggers", True, "raised", flags=["frustrated"])
        assert [d.outcome for d in s.turn_decisions()] == ["raised"]
        assert [d.outcome for d in s.turn_decisions(1)] == ["none"]

    def test_dict_round_trip_keeps_state(self):
        s = CallSession(call_id="c1", tenant_id="acme", caller_id="+15125551234")
        s.lane = Lane.BOOKING
        s.slots.set_pending("preferred_time", "tomorrow morning")
        s.slots.confirmed["name"] = "Bob"
        s.turn_count = 4
        s.record("lane_transition", True, "advanced", to="booking")

        restored = CallSession.from_dict(s.to_dict())
        assert restored.lane == Lane.BOOKING
        assert restored.slots.pending == {"preferred_time": "tomorrow morning"}
        assert restored.slots.confirmed == {"name": "Bob"}
        assert isinstance(restored.decisions[0], DecisionRecord)
        assert restored.decisions[0].detail == {"to": "booking"}
        assert restored.to_dict() == s.to_dict()
