import asyncio
import threading

from chat_core.pipeline.streaming import StreamingUpdateCoordinator


def test_final_observed_content_is_latest_schedule():
    async def scenario():
        coord = StreamingUpdateCoordinator(interval=0.05)
        applied = []
        coord.schedule("m1", "H", applied.append)
        await asyncio.sleep(0.01)
        for chunk in ["He", "Hel", "Hell", "Hello"]:
            coord.schedule("m1", chunk, applied.append)
        await asyncio.sleep(0.15)
        return applied, coord

    applied, coord = asyncio.run(scenario())
    assert applied == ["H", "Hello"]
    assert not coord.has_pending("m1")


def test_updates_are_rate_limited():
    async def scenario():
        loop = asyncio.get_running_loop()
        coord = StreamingUpdateCoordinator(interval=0.05)
        stamps = []
        for i in range(20):
            coord.schedule("m1", str(i), lambda c: stamps.append((loop.time(), c)))
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.2)
        return stamps

    stamps = asyncio.run(scenario())
    assert stamps[-1][1] == "19"
    gaps = [b[0] - a[0] for a, b in zip(stamps, stamps[1:])]
    # 事件循环计时存在少量误差
    assert all(g >= 0.04 for g in gaps)


def test_finalize_wins_over_pending_update():
    async def scenario():
        coord = StreamingUpdateCoordinator(interval=10.0)
        applied = []
        coord.schedule("m1", "first", applied.append)
        await asyncio.sleep(0.01)
        coord.schedule("m1", "stale partial", applied.append)
        assert coord.has_pending("m1")
        coord.finalize("m1", "final", applied.append)
        await asyncio.sleep(0.05)
        return applied, coord

    applied, coord = asyncio.run(scenario())
    assert applied == ["first", "final"]
    assert not coord.has_pending("m1")


def test_finalize_is_idempotent_and_blocks_late_updates():
    async def scenario():
        coord = StreamingUpdateCoordinator(interval=0.01)
        applied = []
        assert coord.finalize("m1", "done", applied.append) is True
        assert coord.finalize("m1", "done again", applied.append) is False
        coord.schedule("m1", "late", applied.append)
        coord.apply_immediately("m1", "late too", applied.append)
        await asyncio.sleep(0.05)
        return applied

    assert asyncio.run(scenario()) == ["done"]


def test_apply_immediately_bypasses_debounce():
    async def scenario():
        coord = StreamingUpdateCoordinator(interval=10.0)
        applied = []
        coord.apply_immediately("m1", "a", applied.append)
        coord.apply_immediately("m1", "ab", applied.append)
        snapshot = list(applied)
        coord.finalize("m1", "abc", applied.append)
        return snapshot, applied

    snapshot, applied = asyncio.run(scenario())
    assert snapshot == ["a", "ab"]
    assert applied == ["a", "ab", "abc"]


def test_discard_drops_pending_update():
    async def scenario():
        coord = StreamingUpdateCoordinator(interval=10.0)
        applied = []
        coord.schedule("m1", "x", applied.append)
        await asyncio.sleep(0.01)
        coord.schedule("m1", "y", applied.append)
        coord.discard("m1")
        await asyncio.sleep(0.02)
        return applied, coord

    applied, coord = asyncio.run(scenario())
    assert applied == ["x"]
    assert coord.session("m1") is None


def test_updates_from_worker_thread_are_applied_on_loop():
    async def scenario():
        loop = asyncio.get_running_loop()
        coord = StreamingUpdateCoordinator(interval=0.01, loop=loop)
        applied = []
        threads = []

        def sink(content):
            threads.append(threading.get_ident())
            applied.append(content)

        def producer():
            text = ""
            for ch in "streamed from a worker":
                text += ch
                coord.schedule("m1", text, sink)

        worker = threading.Thread(target=producer)
        worker.start()
        await asyncio.to_thread(worker.join)
        await asyncio.sleep(0.1)
        coord.finalize("m1", "streamed from a worker!", sink)
        return applied, threads, threading.get_ident()

    applied, threads, loop_thread = asyncio.run(scenario())
    assert applied[-2] == "streamed from a worker"
    assert applied[-1] == "streamed from a worker!"
    assert set(threads) == {loop_thread}
    # 应用的内容按时间单调增长
    assert all(len(a) < len(b) for a, b in zip(applied, applied[1:]))


def test_finalized_sessions_are_released():
    async def scenario():
        coord = StreamingUpdateCoordinator(interval=10.0)
        applied = []
        for i in range(1000):
            coord.schedule(f"m{i}", "partial", applied.append)
            coord.finalize(f"m{i}", "done", applied.append)
        return coord

    coord = asyncio.run(scenario())
    assert coord.active_sessions == 0
    assert coord.session("m999") is None


def test_discarded_message_ignores_late_updates():
    async def scenario():
        coord = StreamingUpdateCoordinator(interval=0.01)
        applied = []
        coord.discard("m1")
        coord.schedule("m1", "late", applied.append)
        coord.apply_immediately("m1", "late too", applied.append)
        await asyncio.sleep(0.05)
        return applied, coord

    applied, coord = asyncio.run(scenario())
    assert applied == []
    assert coord.active_sessions == 0
