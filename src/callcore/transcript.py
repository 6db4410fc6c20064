from callcore.session import CallSession


def to_plain_text(log: list[dict]) -> str:
    """Convert transcript log to plain text format.

    Agent lines prefixed with "Agent:", caller lines with "Caller:".
    """
    if not log:
        return ""

    lines = []
    for entry in log:
        role = entry.get("role", "")
        if role == "agent":
            lines.append(f"Agent: {entry['content']}")
        elif role == "user":
            lines.append(f"Caller: {entry['content']}")
    return "\n".join(lines)


def to_decision_trace(session: CallSession) -> list[dict]:
    """Group decision records by turn for the archive.

    Returns ``[{"turn": n, "stages": [...]}]`` in turn order, stages in the
    order they ran.
    """
    turns: dict[int, list] = {}
    for rec in session.decisions:
        turns.setdefault(rec.turn, []).append({
            "stage": rec.stage,
            "attempted": rec.attempted,
            "outcome": rec.outcome,
            "reason": rec.reason,
        })
    return [{"turn": turn, "stages": stages} for turn, stages in sorted(turns.items())]


def build_archive(session: CallSession, end_time: float) -> dict:
    """The document written to the durable store when a call ends."""
    duration = max(0, int(end_time - session.start_time)) if session.start_time > 0 else 0
    return {
        "call_id": session.call_id,
        "tenant_id": session.tenant_id,
        "caller_id": session.caller_id,
        "outcome": session.outcome,
        "final_lane": session.lane.value,
        "duration_seconds": duration,
        "turns": session.turn_count,
        "confirmed_slots": dict(session.slots.confirmed),
        "unconfirmed_slots": dict(session.slots.pending),
        "transfer_target": session.transfer_target,
        "transcript": to_plain_text(session.transcript_log),
        "decision_trace": to_decision_trace(session),
        "session": session.to_dict(),
    }
