import asyncio

from voxrelay.relay.debounce import InterimDebouncer


def _collector():
    fired = []

    async def callback(pending):
        fired.append(pending)

    return fired, callback


def test_only_latest_text_in_window_fires():
    fired, callback = _collector()

    async def scenario():
        d = InterimDebouncer(callback, delay_sec=0.15)
        for text in ("one", "one two", "one two three"):
            assert d.on_interim("s1", text) is True
            await asyncio.sleep(0.03)
        await asyncio.sleep(0.3)

    asyncio.run(scenario())
    assert [p.text for p in fired] == ["one two three"]
    assert fired[0].session_id == "s1"
    assert fired[0].seq == 3


def test_repeated_text_is_not_rescheduled():
    fired, callback = _collector()

    async def scenario():
        d = InterimDebouncer(callback, delay_sec=0.05)
        assert d.on_interim("s1", "hello") is True
        assert d.on_interim("s1", "hello") is False
        await asyncio.sleep(0.15)
        assert d.on_interim("s1", "hello") is False
        await asyncio.sleep(0.15)

    asyncio.run(scenario())
    assert [p.text for p in fired] == ["hello"]


def test_cancel_with_other_session_leaves_timer_pending():
    fired, callback = _collector()

    async def scenario():
        d = InterimDebouncer(callback, delay_sec=0.05)
        d.on_interim("s1", "hello")
        assert d.cancel(session_id="s2") is False
        assert d.pending is not None
        await asyncio.sleep(0.15)

    asyncio.run(scenario())
    assert [p.session_id for p in fired] == ["s1"]


def test_cancel_for_own_session_stops_timer():
    fired, callback = _collector()

    async def scenario():
        d = InterimDebouncer(callback, delay_sec=0.05)
        d.on_interim("s1", "hello")
        assert d.cancel(session_id="s1") is True
        await asyncio.sleep(0.15)
        return d

    d = asyncio.run(scenario())
    assert fired == []
    assert d.pending is None


def test_reset_clears_dedup_text():
    fired, callback = _collector()

    async def scenario():
        d = InterimDebouncer(callback, delay_sec=0.05)
        d.on_interim("s1", "hello")
        await asyncio.sleep(0.15)
        d.reset()
        assert d.on_interim("s2", "hello") is True
        await asyncio.sleep(0.15)

    asyncio.run(scenario())
    assert [(p.session_id, p.text) for p in fired] == [("s1", "hello"), ("s2", "hello")]


def test_failing_callback_does_not_break_next_schedule():
    calls = []

    async def callback(pending):
        calls.append(pending.text)
        if pending.text == "boom":
            raise RuntimeError("gateway down")

    async def scenario():
        d = InterimDebouncer(callback, delay_sec=0.03)
        d.on_interim("s1", "boom")
        await asyncio.sleep(0.1)
        assert d.on_interim("s1", "boom again") is True
        await asyncio.sleep(0.1)

    asyncio.run(scenario())
    assert calls == ["boom", "boom again"]


def test_blank_text_is_ignored():
    fired, callback = _collector()

    async def scenario():
        d = InterimDebouncer(callback, delay_sec=0.01)
        assert d.on_interim("s1", "   ") is False
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert fired == []
