from callcore.triggers import DISTRUST, FRUSTRATED, REFUSAL, REPEAT, detect_triggers


class TestDetectTriggers:
    def test_plain_utterance_raises_nothing(self):
        assert detect_triggers("my AC is down") == []

    def test_frustration(self):
        assert detect_triggers("This is ridiculous") == [FRUSTRATED]

    def test_distrust(self):
        assert detect_triggers("wait, are you a robot?") == [DISTRUST]

    def test_refusal(self):
        assert detect_triggers("I'd rather not say") == [REFUSAL]

    def test_repeat_compares_normalized_text(self):
        assert detect_triggers("My AC is down!", previous_utterance="my ac is down") == [REPEAT]

    def test_empty_utterance_is_not_a_repeat(self):
        assert detect_triggers("", previous_utterance="") == []

    def test_several_flags_at_once(self):
        flags = detect_triggers("Come on, is this a real person?")
        assert FRUSTRATED in flags
        assert DISTRUST in flags
