from __future__ import annotations

import asyncio

from models.schemas import PresenceStatus

# The frozen clock starts at 15:00 UTC.
QUIET_NOW = {"quiet_hours_start": "14:00", "quiet_hours_end": "16:00"}


def test_online_professionals_in_quiet_hours_are_marked_busy(orchestrator, seed, clock):
    async def _run():
        await seed("resting", **QUIET_NOW)
        await seed("pinned", **QUIET_NOW)
        await orchestrator.heartbeat("pinned", PresenceStatus.ONLINE, override=True)
        await seed("offline", status=PresenceStatus.OFFLINE, **QUIET_NOW)
        await seed("working", quiet_hours_start="22:00", quiet_hours_end="06:00")
        await seed("inactive", is_active=False, **QUIET_NOW)

        report = await orchestrator.run_quiet_hours_sweep()
        assert report.sweep == "quiet_hours"
        assert report.professionals_updated == 1
        assert report.errors == []

        statuses = await orchestrator.directory.get_statuses(["resting", "pinned", "offline", "working", "inactive"])
        assert statuses["resting"].status == PresenceStatus.BUSY
        assert statuses["pinned"].status == PresenceStatus.ONLINE
        assert statuses["offline"].status == PresenceStatus.OFFLINE
        assert statuses["working"].status == PresenceStatus.ONLINE
        assert statuses["inactive"].status == PresenceStatus.ONLINE

        # Busy stays after the window closes until the professional comes back online.
        clock.advance(hours=2)
        again = await orchestrator.run_quiet_hours_sweep()
        assert again.professionals_updated == 0
        assert (await orchestrator.directory.get_status("resting")).status == PresenceStatus.BUSY

    asyncio.run(_run())
