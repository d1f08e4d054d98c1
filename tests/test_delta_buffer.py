from streamux.delta_buffer import DeltaBuffer, buffer_delta, flush_buffered_deltas


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestDeltaBuffer:

    def test_holds_text_below_threshold(self):
        buf = DeltaBuffer(time_limit=None)
        assert buf.add("short") is None
        assert len(buf) == 5

    def test_releases_at_threshold_and_grows(self):
        buf = DeltaBuffer(time_limit=None)
        assert buf.add("a" * 20) == "a" * 20
        assert buf.threshold == 40
        assert buf.add("b" * 39) is None
        assert buf.add("b") == "b" * 40
        assert buf.threshold == 60

    def test_threshold_is_capped(self):
        buf = DeltaBuffer(threshold=390, max_threshold=400, time_limit=None)
        buf.add("x" * 390)
        assert buf.threshold == 400
        buf.add("x" * 400)
        assert buf.threshold == 400

    def test_time_limit_forces_release(self):
        clock = FakeClock()
        buf = DeltaBuffer(time_limit=0.5, clock=clock)
        assert buf.add("hi") is None
        clock.now = 0.6
        assert buf.add(" there") == "hi there"

    def test_flush_returns_remainder_once(self):
        buf = DeltaBuffer(time_limit=None)
        buf.add("tail")
        assert buf.flush() == "tail"
        assert buf.flush() is None

    def test_output_is_identical_to_input(self):
        fragments = ["The ", "quick ", "brown fox ", "jumps over ", "the lazy dog. "] * 30
        buf = DeltaBuffer(time_limit=None)
        released = [out for out in (buf.add(f) for f in fragments) if out is not None]
        tail = buf.flush()
        if tail is not None:
            released.append(tail)
        assert "".join(released) == "".join(fragments)
        assert len(released) < len(fragments)


class TestBufferHelpers:

    def test_buffer_delta_creates_buffer_per_message(self):
        store = {}
        events = buffer_delta(store, "m1", "x" * 25, lambda content: {"content": content})
        assert events == [{"content": "x" * 25}]
        assert "m1" in store
        assert buffer_delta(store, "m2", "y", lambda content: {"content": content}) == []

    def test_flush_buffered_deltas_clears_store(self):
        store = {}
        buffer_delta(store, "m1", "abc", lambda c: c)
        buffer_delta(store, "m2", "def", lambda c: c)
        events = flush_buffered_deltas(store, lambda message_id, content: (message_id, content))
        assert sorted(events) == [("m1", "abc"), ("m2", "def")]
        assert store == {}

    def test_single_characters_and_empty_fragments(self):
        fragments = ["a", "", "b", ""] * 40 + ["", "c"]
        buf = DeltaBuffer(time_limit=None)
        released = [out for out in (buf.add(f) for f in fragments) if out is not None]

        assert released[0] == "ab" * 10
        assert all(released)
        assert "".join(released) + buf.flush() == "".join(fragments)
        assert buf.flush() is None

    def test_empty_fragment_never_releases_empty_text(self):
        clock = FakeClock()
        buf = DeltaBuffer(clock=clock)
        clock.now = 10.0
        assert buf.add("") is None
        assert buf.add("x") == "x"
