"""
Presence directory.

Tracks which bridges are online from heartbeat / leave messages on the
presence topic. Nothing is persisted: after attaching, a sync_request asks
every bridge for an immediate heartbeat to rebuild the picture.

A record whose last heartbeat is older than `stale_after` seconds counts as
offline even if no leave message arrived.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from print_bridge.realtime.channel import (
    EVENT_HEARTBEAT, EVENT_LEAVE, EVENT_SYNC_REQUEST, Channel, ChannelError,
)
from print_bridge.utils import now_ms

logger = logging.getLogger(__name__)

ROLE_PRINT_BRIDGE = 'print-bridge'
DEFAULT_STALE_AFTER = 120


@dataclass
class PresenceRecord:
    device_id: str
    role: str
    online: bool
    last_heartbeat_at: float        # local clock, seconds

    def to_dict(self) -> dict:
        return {
            'deviceId': self.device_id,
            'role': self.role,
            'online': self.online,
            'lastHeartbeatAt': int(self.last_heartbeat_at * 1000),
        }


class PresenceDirectory:

    def __init__(self, stale_after: float = DEFAULT_STALE_AFTER, device_id: Optional[str] = None,
                 role: str = ROLE_PRINT_BRIDGE, clock: Callable[[], float] = time.time):
        self.stale_after = stale_after
        self.device_id = device_id      # set on bridges: sync requests are answered for this id
        self.role = role
        self.clock = clock
        self.records: Dict[str, PresenceRecord] = {}
        self.channel: Optional[Channel] = None
        self.synced = asyncio.Event()
        self._on_join: List[Callable] = []
        self._on_leave: List[Callable] = []
        self._on_sync: List[Callable] = []

    # -- wiring ---------------------------------------------------------------

    async def attach(self, channel: Channel, request_sync: bool = True):
        """Listen on a presence channel; if it is connected, ask bridges to announce themselves."""
        if self.channel is not channel:
            self.channel = channel
            channel.on(EVENT_HEARTBEAT, self.apply_heartbeat)
            channel.on(EVENT_LEAVE, self.apply_leave)
            channel.on(EVENT_SYNC_REQUEST, self._answer_sync)
        if request_sync and channel.connected:
            await self.sync_request()

    def subscribe(self, on_join: Optional[Callable] = None, on_leave: Optional[Callable] = None,
                  on_sync: Optional[Callable] = None):
        """Callbacks get a PresenceRecord (join/leave) or the snapshot list (sync)."""
        if on_join:
            self._on_join.append(on_join)
        if on_leave:
            self._on_leave.append(on_leave)
        if on_sync:
            self._on_sync.append(on_sync)

    async def sync_request(self):
        self.synced.clear()
        await self._publish(EVENT_SYNC_REQUEST, {'timestamp': now_ms()})

    async def wait_for_sync(self, timeout: float) -> bool:
        """True once a heartbeat has arrived since the last sync request; False on timeout."""
        if self.synced.is_set():
            return True
        try:
            await asyncio.wait_for(self.synced.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # -- outbound -------------------------------------------------------------

    async def heartbeat(self, device_id: Optional[str] = None):
        device_id = device_id or self.device_id
        await self._publish(EVENT_HEARTBEAT, {
            'role': self.role,
            'deviceId': device_id,
            'online': True,
            'timestamp': now_ms(),
        })

    async def leave(self, device_id: Optional[str] = None):
        device_id = device_id or self.device_id
        await self._publish(EVENT_LEAVE, {'role': self.role, 'deviceId': device_id, 'timestamp': now_ms()})

    async def _publish(self, event: str, payload: dict):
        if self.channel is None:
            raise ChannelError("presence directory is not attached")
        await self.channel.publish(event, payload)

    async def _answer_sync(self, payload: dict):
        if self.device_id:
            logger.debug(f"Answering presence sync for {self.device_id}")
            await self.heartbeat()

    # -- inbound --------------------------------------------------------------

    def apply_heartbeat(self, payload: dict, received_at: Optional[float] = None):
        device_id = payload.get('deviceId')
        if not device_id:
            return
        now = received_at if received_at is not None else self.clock()
        previous = self.records.get(device_id)
        was_live = previous is not None and self._is_live(previous, now)
        record = PresenceRecord(
            device_id=device_id,
            role=payload.get('role', ''),
            online=bool(payload.get('online', True)),
            last_heartbeat_at=now,
        )
        self.records[device_id] = record
        if not was_live and record.online:
            logger.info(f"Presence: {device_id} online ({record.role})")
            self._fire(self._on_join, record)
        if not self.synced.is_set():
            self.synced.set()
            self._fire(self._on_sync, self.snapshot())

    def apply_leave(self, payload: dict):
        device_id = payload.get('deviceId')
        record = self.records.get(device_id)
        if record is None:
            return
        record.online = False
        logger.info(f"Presence: {device_id} left")
        self._fire(self._on_leave, record)

    def _fire(self, callbacks: List[Callable], arg):
        for callback in callbacks:
            try:
                callback(arg)
            except Exception as e:
                logger.error(f"Presence callback failed: {e}", exc_info=True)

    # -- queries --------------------------------------------------------------

    def _is_live(self, record: PresenceRecord, now: float) -> bool:
        return now - record.last_heartbeat_at <= self.stale_after

    def snapshot(self) -> List[PresenceRecord]:
        """Records with a heartbeat inside the staleness window."""
        now = self.clock()
        return [r for r in self.records.values() if self._is_live(r, now)]

    def candidates(self) -> List[PresenceRecord]:
        """Online print bridges, most recent heartbeat first."""
        live = [r for r in self.snapshot() if r.role == ROLE_PRINT_BRIDGE and r.online]
        return sorted(live, key=lambda r: r.last_heartbeat_at, reverse=True)
