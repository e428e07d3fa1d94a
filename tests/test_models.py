from agentcanvas.sessions.models import SessionStatus, can_transition


def test_nothing_is_terminal() -> None:
    for status in SessionStatus:
        if status is not SessionStatus.IDLE:
            assert can_transition(status, SessionStatus.IDLE)
    assert can_transition(SessionStatus.ERROR, SessionStatus.STARTING)
    assert can_transition(SessionStatus.DISCONNECTED, SessionStatus.STARTING)


def test_illegal_transitions() -> None:
    assert not can_transition(SessionStatus.IDLE, SessionStatus.RUNNING)
    assert not can_transition(SessionStatus.WAITING_INPUT, SessionStatus.TOOL_CALLING)
