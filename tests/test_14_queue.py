"""
Tests for the FIFO backlog.

Tests cover:
- Requests beyond capacity are queued, not dropped
- Strict FIFO order when slots free up
- Paced draining with queue_processing_delay_ms
- Queue gauge kept in step with the backlog
- stop_all() cancels queued futures
"""
import asyncio

from narration_ms.narration.result import SpeakStatus

from conftest import wait_until


class TestQueueing:
    """Tests for admission-full requests going to the backlog."""

    def test_fifo_with_two_slots(self, make_manager, polly, device):
        """A and B play, C and D wait; C then D play as slots free up."""
        async def go():
            manager = make_manager(audio={"max_concurrent_audio": 2, "queue_processing_delay_ms": 10})
            a, b, c, d = await asyncio.gather(
                manager.speak("Alpha"),
                manager.speak("Bravo"),
                manager.speak("Charlie"),
                manager.speak("Delta"),
            )

            assert (a.status, b.status) == (SpeakStatus.PLAYING, SpeakStatus.PLAYING)
            assert (c.status, d.status) == (SpeakStatus.QUEUED, SpeakStatus.QUEUED)
            assert len(manager.queue) == 2
            assert manager.metrics.queued_requests == 2
            assert manager.queue.pending_texts() == ["Charlie", "Delta"]

            await device.end(a.resource_id)
            c_final = await asyncio.wait_for(c.pending, 2)
            assert c_final.status == SpeakStatus.PLAYING
            assert len(manager.queue) == 1
            assert not d.pending.done()

            await device.end(b.resource_id)
            d_final = await asyncio.wait_for(d.pending, 2)
            assert d_final.status == SpeakStatus.PLAYING

            status = manager.get_status()
            await manager.stop_all()
            return status

        status = asyncio.run(go())

        assert sorted(polly.texts[:2]) == ["Alpha", "Bravo"]
        assert polly.texts[2:] == ["Charlie", "Delta"]
        assert status["audio"]["active_audio_count"] == 2
        assert status["audio"]["queued_audio_count"] == 0
        assert status["metrics"]["queued_requests"] == 0

    def test_new_request_waits_behind_backlog(self, make_manager, polly, device):
        """A free slot does not let a newcomer overtake queued entries."""
        async def go():
            manager = make_manager(audio={"max_concurrent_audio": 1, "queue_processing_delay_ms": 50})
            first = await manager.speak("one")
            second = await manager.speak("two")
            await device.end(first.resource_id)
            # slot is free now, but "two" is still waiting for its drain
            third = await manager.speak("three")

            assert second.status == SpeakStatus.QUEUED
            assert third.status == SpeakStatus.QUEUED

            second_final = await asyncio.wait_for(second.pending, 2)
            await device.end(second_final.resource_id)
            third_final = await asyncio.wait_for(third.pending, 2)
            await manager.stop_all()
            return third_final

        third_final = asyncio.run(go())
        assert third_final.status == SpeakStatus.PLAYING
        assert polly.texts == ["one", "two", "three"]

    def test_drain_is_paced(self, make_manager, polly, device):
        async def go():
            manager = make_manager(audio={"max_concurrent_audio": 1, "queue_processing_delay_ms": 80})
            first = await manager.speak("one")
            queued = [await manager.speak(t) for t in ("two", "three")]
            await device.end(first.resource_id)

            loop = asyncio.get_running_loop()
            started = loop.time()
            two = await asyncio.wait_for(queued[0].pending, 2)
            await device.end(two.resource_id)
            await asyncio.wait_for(queued[1].pending, 2)
            elapsed = loop.time() - started
            await manager.stop_all()
            return elapsed

        elapsed = asyncio.run(go())
        # one wait before "two" starts, one between "two" and "three"
        assert elapsed >= 0.14


class TestQueueCancellation:
    def test_stop_all_cancels_backlog(self, make_manager, device):
        async def go():
            manager = make_manager(audio={"max_concurrent_audio": 1})
            first = await manager.speak("one")
            queued = [await manager.speak(t) for t in ("two", "three")]

            summary = await manager.stop_all()
            finals = [await q.pending for q in queued]
            await asyncio.sleep(0.05)
            return manager, first, summary, finals

        manager, first, summary, finals = asyncio.run(go())

        assert summary["discarded"] == 2
        assert summary["stopped"] == 1
        assert [f.status for f in finals] == [SpeakStatus.CANCELLED, SpeakStatus.CANCELLED]
        assert len(manager.queue) == 0
        assert manager.metrics.queued_requests == 0
        assert device.released == [first.resource_id]

    def test_processing_flag(self, make_manager, device):
        async def go():
            manager = make_manager(audio={"max_concurrent_audio": 1, "queue_processing_delay_ms": 5})
            device.gate = asyncio.Event()
            device.gate.set()
            first = await manager.speak("one")
            device.gate.clear()
            second = await manager.speak("two")
            await device.end(first.resource_id)
            await wait_until(lambda: manager.queue.is_processing)
            processing = manager.get_status()["audio"]["is_processing_queue"]
            device.gate.set()
            await asyncio.wait_for(second.pending, 2)
            await manager.stop_all()
            return processing

        assert asyncio.run(go()) is True
