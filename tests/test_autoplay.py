"""
Tests for autoplay-policy recovery.

Tests cover:
- A rejected play() is deferred, not failed
- The next user gesture retries once and playback starts
- No gesture within the timeout releases the resource
- A page hidden before playback defers without trying
- A retry that fails releases the resource as errored
"""
import asyncio

from narration_ms.narration.autoplay import DeferralState
from narration_ms.narration.playback import DeviceEvent
from narration_ms.narration.result import SpeakStatus

from conftest import wait_until


class TestGestureRecovery:
    """Tests for blocked -> waiting -> retried."""

    def test_blocked_then_gesture_plays(self, make_manager, device):
        async def go():
            manager = make_manager()
            device.reject_next = 1

            result = await manager.speak("The door creaks open.")
            deferral = manager.autoplay.get(result.resource_id)
            waiting = (manager.autoplay.waiting_count, manager.admission.active_count, deferral.state)

            started = await manager.notify_gesture("click")
            after = (manager.admission.active_count, manager.metrics.successful_requests)
            await manager.stop_all()
            return result, waiting, started, after

        result, waiting, started, after = asyncio.run(go())

        assert result.status == SpeakStatus.DEFERRED
        assert result.ok
        assert waiting == (1, 0, DeferralState.WAITING_FOR_GESTURE)
        assert started == 1
        assert after == (1, 1)
        assert device.played == [result.resource_id, result.resource_id]

    def test_gesture_from_device_event(self, make_manager, device):
        async def go():
            manager = make_manager()
            device.reject_next = 1
            result = await manager.speak("Look behind you.")
            await device.emit(DeviceEvent("gesture", data={"kind": "keydown"}))
            active = manager.admission.active_count
            await manager.stop_all()
            return result, active

        result, active = asyncio.run(go())
        assert result.status == SpeakStatus.DEFERRED
        assert active == 1

    def test_gesture_without_deferrals_is_noop(self, make_manager):
        async def go():
            manager = make_manager()
            return await manager.notify_gesture("click")

        assert asyncio.run(go()) == 0

    def test_retry_failure_releases(self, make_manager, device):
        async def go():
            manager = make_manager()
            device.reject_next = 1
            result = await manager.speak("Silence.")
            device.fail_play = True
            started = await manager.notify_gesture("click")
            return manager, result, started

        manager, result, started = asyncio.run(go())
        assert started == 0
        assert result.resource_id not in manager.arena
        assert device.released == [result.resource_id]


class TestExpiry:
    def test_no_gesture_expires(self, make_manager, device):
        async def go():
            manager = make_manager(autoplay={"gesture_timeout_s": 0.05})
            device.reject_next = 1
            result = await manager.speak("Nobody hears this.")
            await wait_until(lambda: result.resource_id not in manager.arena)
            started = await manager.notify_gesture("click")
            return manager, result, started

        manager, result, started = asyncio.run(go())
        assert started == 0
        assert manager.autoplay.total_expired == 1
        assert manager.autoplay.waiting_count == 0
        assert device.released == [result.resource_id]


class TestHiddenPage:
    def test_hidden_page_defers_without_playing(self, make_manager, device):
        async def go():
            manager = make_manager()
            manager.set_visibility(False)
            result = await manager.speak("Meanwhile, in another tab.")
            played_before = list(device.played)

            manager.set_visibility(True)
            started = await manager.notify_gesture("click")
            await manager.stop_all()
            return manager, result, played_before, started

        manager, result, played_before, started = asyncio.run(go())
        assert result.status == SpeakStatus.DEFERRED
        assert played_before == []
        assert started == 1
        assert manager.admission.reserved == 0

    def test_stop_all_drops_deferrals(self, make_manager, device):
        async def go():
            manager = make_manager()
            device.reject_next = 1
            result = await manager.speak("Wait for me.")
            summary = await manager.stop_all()
            return manager, result, summary

        manager, result, summary = asyncio.run(go())
        assert summary["deferred"] == 1
        assert manager.autoplay.waiting_count == 0
        assert device.released == [result.resource_id]
