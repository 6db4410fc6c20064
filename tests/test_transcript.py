from callcore.session import CallSession
from callcore.states import Lane
from callcore.transcript import build_archive, to_decision_trace, to_plain_text


class TestToPlainText:
    def test_empty_log(self):
        assert to_plain_text([]) == ""

    def test_formats_both_roles(self):
        log = [
            {"role": "user", "content": "my AC is down"},
            {"role": "agent", "content": "Can I get your name, please?"},
        ]
        assert to_plain_text(log) == "Caller: my AC is down\nAgent: Can I get your name, please?"

    def test_skips_unknown_roles(self):
        log = [{"role": "system", "content": "x"}, {"role": "user", "content": "hi"}]
        assert to_plain_text(log) == "Caller: hi"


def test_decision_trace_groups_by_turn():
    s = CallSession(call_id="c1", tenant_id="acme")
    s.turn_count = 1
    s.record("triggers", True, "none")
    s.record("triage", False, "skipped", "triage_disabled")
    s.turn_count = 2
    s.record("triage", True, "no_match")
    trace = to_decision_trace(s)
    assert [t["turn"] for t in trace] == [1, 2]
    assert [st["stage"] for st in trace[0]["stages"]] == ["triggers", "triage"]
    assert trace[0]["stages"][1] == {
        "stage": "triage", "attempted": False, "outcome": "skipped", "reason": "triage_disabled",
    }


class TestBuildArchive:
    def test_fields(self):
        s = CallSession(call_id="c1", tenant_id="acme", caller_id="+15125551234", start_time=1000.0)
        s.turn_count = 3
        s.lane = Lane.CLOSED
        s.outcome = "transfer"
        s.transfer_target = "+15125550100"
        s.slots.confirmed["name"] = "Bob"
        s.slots.pending["address"] = "123 Oak St"
        archive = build_archive(s, end_time=1095.5)
        assert archive["duration_seconds"] == 95
        assert archive["final_lane"] == "closed"
        assert archive["confirmed_slots"] == {"name": "Bob"}
        assert archive["unconfirmed_slots"] == {"address": "123 Oak St"}
        assert archive["transfer_target"] == "+15125550100"
        assert archive["session"]["call_id"] == "c1"

    def test_unknown_start_time(self):
        s = CallSession(call_id="c1", tenant_id="acme")
        assert build_archive(s, end_time=1000.0)["duration_seconds"] == 0
