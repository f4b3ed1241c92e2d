"""
Liveness Monitor
================
Server-initiated transport probes for reclaiming abruptly disconnected
clients.

Every sweep, a connection whose previous probe is still unacknowledged is
declared dead and handed to the timeout callback; every other connection
gets a fresh probe, and a probe that cannot be sent within one interval
counts as a failed send. A connection that stops answering is therefore
reclaimed within two probe intervals.

Transport probes (WebSocket ping control frames) are separate from the
client-initiated `ping`/`pong` content frames.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set


ProbeCallback = Callable[[str], Awaitable[Optional[asyncio.Future]]]
TimeoutCallback = Callable[[str], Awaitable[None]]


@dataclass
class HeartbeatMetrics:
    """Probe state for a single connection."""
    client_id: str
    pong_waiter: Optional[asyncio.Future] = None
    last_probe_sent: float = 0.0
    last_ack_received: float = 0.0
    probe_count: int = 0
    ack_count: int = 0
    rtt_ms: float = 0.0
    rtt_history: list = field(default_factory=list)

    @property
    def avg_rtt_ms(self) -> float:
        """Calculate average RTT from history."""
        if not self.rtt_history:
            return 0.0
        return sum(self.rtt_history) / len(self.rtt_history)

    @property
    def pending_probe(self) -> bool:
        """An issued probe has not completed yet."""
        return self.pong_waiter is not None and not self.pong_waiter.done()

    @property
    def probe_failed(self) -> bool:
        """The last probe completed without an acknowledgement (connection closed)."""
        waiter = self.pong_waiter
        if waiter is None or not waiter.done():
            return False
        return waiter.cancelled() or waiter.exception() is not None

    def record_probe_sent(self, pong_waiter: asyncio.Future):
        """Record that a probe was issued and watch for its acknowledgement."""
        self.pong_waiter = pong_waiter
        self.last_probe_sent = time.time()
        self.probe_count += 1
        pong_waiter.add_done_callback(self._on_waiter_done)

    def _on_waiter_done(self, waiter: asyncio.Future):
        if waiter.cancelled() or waiter.exception() is not None:
            return
        now = time.time()
        self.last_ack_received = now
        self.ack_count += 1
        self.rtt_ms = (now - self.last_probe_sent) * 1000
        # Keep last 10 RTT values for averaging
        self.rtt_history.append(self.rtt_ms)
        if len(self.rtt_history) > 10:
            self.rtt_history.pop(0)


class HeartbeatService:
    """
    Periodic liveness sweep over all registered connections.

    Responsibilities:
    - Issue one transport probe per connection per interval
    - Declare connections with an unacknowledged probe dead
    - Report dead connections through the timeout callback
    - Provide RTT metrics for monitoring

    Errors inside a sweep or a callback are logged and never stop the loop.
    """

    def __init__(
        self,
        probe_interval_seconds: float = 30.0,
        logger=None
    ):
        """
        Initialize HeartbeatService.

        Args:
            probe_interval_seconds: Interval between sweeps
            logger: Optional structured logger
        """
        self.probe_interval = probe_interval_seconds
        self.logger = logger

        self._metrics: Dict[str, HeartbeatMetrics] = {}
        self._active_clients: Set[str] = set()

        # Callbacks
        self._send_probe_callback: Optional[ProbeCallback] = None
        self._on_timeout_callback: Optional[TimeoutCallback] = None

        # Background task
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._is_running = False

        self.total_sweeps = 0
        self.total_timeouts = 0

    def set_callbacks(
        self,
        send_probe: ProbeCallback,
        on_timeout: Optional[TimeoutCallback] = None
    ):
        """
        Set callback functions for heartbeat events.

        Args:
            send_probe: Async function(client_id) -> pong waiter, or None if the probe could not be sent
            on_timeout: Async function(client_id) called when a connection is declared dead
        """
        self._send_probe_callback = send_probe
        self._on_timeout_callback = on_timeout

    def register_client(self, client_id: str):
        """Register a new client for liveness monitoring."""
        self._active_clients.add(client_id)
        self._metrics[client_id] = HeartbeatMetrics(client_id=client_id)
        if self.logger:
            self.logger.debug("heartbeat_service.client_registered", {
                "client_id": client_id
            })

    def unregister_client(self, client_id: str):
        """Unregister a client from liveness monitoring."""
        self._active_clients.discard(client_id)
        self._metrics.pop(client_id, None)
        if self.logger:
            self.logger.debug("heartbeat_service.client_unregistered", {
                "client_id": client_id
            })

    async def start(self):
        """Start the heartbeat service background task."""
        if self._is_running:
            return

        self._is_running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        if self.logger:
            self.logger.info("heartbeat_service.started", {
                "probe_interval_seconds": self.probe_interval
            })

    async def stop(self):
        """Stop the heartbeat service."""
        self._is_running = False

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        if self.logger:
            self.logger.info("heartbeat_service.stopped", {
                "total_sweeps": self.total_sweeps,
                "total_timeouts": self.total_timeouts
            })

    async def _heartbeat_loop(self):
        """Main heartbeat loop - runs in background."""
        while self._is_running:
            try:
                await asyncio.sleep(self.probe_interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                if self.logger:
                    self.logger.error("heartbeat_service.loop_error", {
                        "error": str(e),
                        "error_type": type(e).__name__
                    })

    async def sweep(self) -> List[str]:
        """
        Run one liveness cycle.

        Connections with an unacknowledged probe are reported first. Fresh
        probes then go out concurrently, each bounded by the probe interval,
        so one stalled transport cannot hold back the rest of the sweep.

        Returns:
            Client ids declared dead in this cycle
        """
        self.total_sweeps += 1
        unacknowledged = []
        to_probe = []

        for client_id in list(self._active_clients):
            metrics = self._metrics.get(client_id)
            if not metrics:
                continue

            if metrics.pending_probe or metrics.probe_failed:
                if self.logger:
                    self.logger.warning("heartbeat_service.probe_unacknowledged", {
                        "client_id": client_id,
                        "time_since_probe_seconds": time.time() - metrics.last_probe_sent,
                        "probe_count": metrics.probe_count,
                        "ack_count": metrics.ack_count
                    })
                unacknowledged.append(client_id)
            else:
                to_probe.append((client_id, metrics))

        dead_clients = await self._declare_dead(unacknowledged)

        results = await asyncio.gather(
            *(self._send_probe(client_id, metrics) for client_id, metrics in to_probe)
        )
        failed = [client_id for (client_id, _), sent in zip(to_probe, results) if not sent]
        dead_clients.extend(await self._declare_dead(failed))

        return dead_clients

    async def _declare_dead(self, client_ids: List[str]) -> List[str]:
        declared = []
        for client_id in client_ids:
            # Unregistered while the sweep was running
            if client_id not in self._active_clients:
                continue
            self.total_timeouts += 1
            self._active_clients.discard(client_id)
            declared.append(client_id)
            await self._notify_timeout(client_id)
        return declared

    async def _send_probe(self, client_id: str, metrics: HeartbeatMetrics) -> bool:
        if not self._send_probe_callback:
            return True

        try:
            pong_waiter = await asyncio.wait_for(
                self._send_probe_callback(client_id),
                timeout=self.probe_interval
            )
        except asyncio.TimeoutError:
            if self.logger:
                self.logger.warning("heartbeat_service.probe_timeout", {
                    "client_id": client_id,
                    "timeout_seconds": self.probe_interval
                })
            return False
        except Exception as e:
            if self.logger:
                self.logger.error("heartbeat_service.probe_error", {
                    "client_id": client_id,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
            return False

        if pong_waiter is None:
            if self.logger:
                self.logger.warning("heartbeat_service.probe_send_failed", {
                    "client_id": client_id
                })
            return False

        metrics.record_probe_sent(pong_waiter)
        return True

    async def _notify_timeout(self, client_id: str):
        if not self._on_timeout_callback:
            return
        try:
            await self._on_timeout_callback(client_id)
        except Exception as e:
            if self.logger:
                self.logger.error("heartbeat_service.timeout_callback_error", {
                    "client_id": client_id,
                    "error": str(e)
                })

    def get_metrics(self, client_id: str) -> Optional[Dict[str, Any]]:
        """
        Get heartbeat metrics for a specific client.

        Returns:
            Dict with heartbeat metrics or None if client not found
        """
        metrics = self._metrics.get(client_id)
        if not metrics:
            return None

        return {
            "client_id": metrics.client_id,
            "probe_count": metrics.probe_count,
            "ack_count": metrics.ack_count,
            "last_rtt_ms": metrics.rtt_ms,
            "avg_rtt_ms": metrics.avg_rtt_ms,
            "pending_probe": metrics.pending_probe,
            "last_probe_sent": metrics.last_probe_sent,
            "last_ack_received": metrics.last_ack_received
        }

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of heartbeat service status."""
        rtts = [m.avg_rtt_ms for m in self._metrics.values() if m.avg_rtt_ms > 0]
        return {
            "is_running": self._is_running,
            "active_clients": len(self._active_clients),
            "pending_probes": sum(1 for m in self._metrics.values() if m.pending_probe),
            "average_rtt_ms": sum(rtts) / len(rtts) if rtts else 0.0,
            "probe_interval_seconds": self.probe_interval,
            "total_sweeps": self.total_sweeps,
            "total_timeouts": self.total_timeouts
        }
