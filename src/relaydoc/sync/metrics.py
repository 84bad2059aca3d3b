"""Latency probes and throughput counters."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, replace


@dataclass(frozen=True)
class LatencyMeasurement:
    probe_id: str
    sent_at: int  # ms
    received_at: int | None = None
    latency: int | None = None
    relay: str | None = None


@dataclass(frozen=True)
class SyncMetrics:
    """Point-in-time copy of the collector's state."""

    last_latency: int | None
    avg_latency: float | None
    min_latency: int | None
    max_latency: int | None
    measurements: tuple[LatencyMeasurement, ...]
    messages_sent: int
    messages_received: int
    bytes_sent: int
    bytes_received: int
    last_sync_at: int
    connected_relays: int
    total_relays: int

    def as_dict(self) -> dict:
        return {
            "lastLatency": self.last_latency,
            "avgLatency": self.avg_latency,
            "minLatency": self.min_latency,
            "maxLatency": self.max_latency,
            "samples": len(self.measurements),
            "messagesSent": self.messages_sent,
            "messagesReceived": self.messages_received,
            "bytesSent": self.bytes_sent,
            "bytesReceived": self.bytes_received,
            "lastSyncAt": self.last_sync_at,
            "connectedRelays": self.connected_relays,
            "totalRelays": self.total_relays,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


class MetricsCollector:
    """Accumulates counters and a bounded history of completed probes.

    Pending probes older than ``probe_timeout_s`` are dropped the next time
    a probe starts; an unanswered ping never counts as a failure.
    """

    def __init__(self, max_samples: int = 100, probe_timeout_s: float = 10.0) -> None:
        self.max_samples = max_samples
        self.probe_timeout_s = probe_timeout_s
        self._samples: deque[LatencyMeasurement] = deque(maxlen=max_samples)
        self._pending: dict[str, LatencyMeasurement] = {}
        self.messages_sent = 0
        self.messages_received = 0
        self.bytes_sent = 0
        self.bytes_received = 0
        self.last_sync_at = 0
        self.connected_relays = 0
        self.total_relays = 0

    # -- counters ------------------------------------------------------------

    def record_sent(self, size: int) -> None:
        self.messages_sent += 1
        self.bytes_sent += size

    def record_received(self, size: int, count: int = 1) -> None:
        self.messages_received += count
        self.bytes_received += size

    def record_sync(self, at_ms: int | None = None) -> None:
        self.last_sync_at = at_ms if at_ms is not None else _now_ms()

    def set_relay_counts(self, connected: int, total: int) -> None:
        self.connected_relays = connected
        self.total_relays = total

    # -- probes --------------------------------------------------------------

    def start_probe(self, probe_id: str, sent_at: int | None = None) -> LatencyMeasurement:
        sent_at = sent_at if sent_at is not None else _now_ms()
        self._age_out(sent_at)
        measurement = LatencyMeasurement(probe_id=probe_id, sent_at=sent_at)
        self._pending[probe_id] = measurement
        return measurement

    def is_pending(self, probe_id: str) -> bool:
        return probe_id in self._pending

    def complete_probe(
        self,
        probe_id: str,
        received_at: int | None = None,
        relay: str | None = None,
    ) -> LatencyMeasurement | None:
        """Finish a pending probe.  Returns ``None`` for unknown or finished ids."""
        pending = self._pending.pop(probe_id, None)
        if pending is None:
            return None
        received_at = received_at if received_at is not None else _now_ms()
        done = replace(
            pending,
            received_at=received_at,
            latency=max(0, received_at - pending.sent_at),
            relay=relay,
        )
        self._samples.append(done)
        return done

    def _age_out(self, now_ms: int) -> None:
        cutoff = now_ms - int(self.probe_timeout_s * 1000)
        for probe_id in [p for p, m in self._pending.items() if m.sent_at < cutoff]:
            del self._pending[probe_id]

    # -- reporting -----------------------------------------------------------

    def snapshot(self) -> SyncMetrics:
        latencies = [m.latency for m in self._samples if m.latency is not None]
        return SyncMetrics(
            last_latency=latencies[-1] if latencies else None,
            avg_latency=round(sum(latencies) / len(latencies), 1) if latencies else None,
            min_latency=min(latencies) if latencies else None,
            max_latency=max(latencies) if latencies else None,
            measurements=tuple(self._samples),
            messages_sent=self.messages_sent,
            messages_received=self.messages_received,
            bytes_sent=self.bytes_sent,
            bytes_received=self.bytes_received,
            last_sync_at=self.last_sync_at,
            connected_relays=self.connected_relays,
            total_relays=self.total_relays,
        )

    def reset(self) -> None:
        """Zero all counters and drop probe history.  Relay counts are kept."""
        self._samples.clear()
        self._pending.clear()
        self.messages_sent = 0
        self.messages_received = 0
        self.bytes_sent = 0
        self.bytes_received = 0
        self.last_sync_at = 0
