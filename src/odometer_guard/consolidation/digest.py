"""Deterministic daily digest over accepted readings.

The digest is the root of a binary Merkle tree:

- leaves are ``sha256`` of the canonical JSON (sorted keys, compact
  separators) of each reading's position, id, device, mileage and time;
- a parent is ``sha256(left || right)`` over the raw 32-byte child hashes,
  in positional order, so reordering the readings changes the root;
- an odd node at the end of a level is paired with itself.

Inclusion proofs let a single reading be checked against an anchored root
without disclosing the rest of the day.

The day is also split into trip segments: a gap of more than
``TRIP_GAP`` between consecutive readings starts a new trip.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Literal

from odometer_guard.storage.repos import TelemetryReadingDTO

TRIP_GAP = timedelta(minutes=30)


@dataclass(frozen=True)
class ProofStep:
    """One sibling on the path from a leaf to the root."""

    sibling: str
    position: Literal["left", "right"]


@dataclass(frozen=True)
class TripSegment:
    """A run of readings with no gap longer than ``TRIP_GAP``."""

    start_at: datetime
    end_at: datetime
    start_mileage: int
    end_mileage: int
    reading_count: int

    @property
    def distance(self) -> int:
        return max(0, self.end_mileage - self.start_mileage)

    def to_dict(self) -> dict[str, object]:
        return {
            "startAt": self.start_at.isoformat(),
            "endAt": self.end_at.isoformat(),
            "startMileage": self.start_mileage,
            "endMileage": self.end_mileage,
            "distance": self.distance,
            "readingCount": self.reading_count,
        }


@dataclass(frozen=True)
class DayDigest:
    """Digest and summary statistics for one vehicle/day."""

    vehicle_id: str
    batch_date: date
    root: str
    leaves: tuple[str, ...]
    reading_ids: tuple[str, ...]
    start_mileage: int
    end_mileage: int
    segments: tuple[TripSegment, ...] = ()

    @property
    def reading_count(self) -> int:
        return len(self.leaves)

    @property
    def total_distance(self) -> int:
        return max(0, self.end_mileage - self.start_mileage)

    def segments_json(self) -> str:
        return json.dumps([s.to_dict() for s in self.segments], separators=(",", ":"))


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def order_readings(readings: Sequence[TelemetryReadingDTO]) -> list[TelemetryReadingDTO]:
    """Order by ``received_at`` ascending, ties broken by reading id."""
    return sorted(readings, key=lambda r: (r.received_at, r.id))


def leaf_hash(reading: TelemetryReadingDTO, index: int) -> str:
    payload = {
        "index": index,
        "reading_id": reading.id,
        "device_id": reading.device_id,
        "reported_mileage": reading.reported_mileage,
        "received_at": reading.received_at.isoformat(),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return _sha256_hex(encoded)


def hash_pair(left: str, right: str) -> str:
    return _sha256_hex(bytes.fromhex(left) + bytes.fromhex(right))


def _next_level(level: list[str]) -> list[str]:
    parents = []
    for i in range(0, len(level), 2):
        left = level[i]
        right = level[i + 1] if i + 1 < len(level) else left
        parents.append(hash_pair(left, right))
    return parents


def merkle_root(leaves: Sequence[str]) -> str:
    if not leaves:
        raise ValueError("Cannot build a Merkle root from zero leaves")
    level = list(leaves)
    while len(level) > 1:
        level = _next_level(level)
    return level[0]


def merkle_proof(leaves: Sequence[str], index: int) -> list[ProofStep]:
    """Inclusion proof for ``leaves[index]``."""
    if not 0 <= index < len(leaves):
        raise IndexError(f"Leaf index {index} out of range for {len(leaves)} leaves")
    proof: list[ProofStep] = []
    level = list(leaves)
    pos = index
    while len(level) > 1:
        if pos % 2 == 0:
            sibling = level[pos + 1] if pos + 1 < len(level) else level[pos]
            proof.append(ProofStep(sibling=sibling, position="right"))
        else:
            proof.append(ProofStep(sibling=level[pos - 1], position="left"))
        level = _next_level(level)
        pos //= 2
    return proof


def verify_proof(leaf: str, proof: Sequence[ProofStep], root: str) -> bool:
    current = leaf
    for step in proof:
        if step.position == "right":
            current = hash_pair(current, step.sibling)
        else:
            current = hash_pair(step.sibling, current)
    return current == root


def split_trips(
    readings: Sequence[TelemetryReadingDTO],
    max_gap: timedelta = TRIP_GAP,
) -> list[TripSegment]:
    """Group ordered readings into trips.

    Mileage bounds are the min/max inside each trip, as accepted readings
    may dip within the rollback tolerance.
    """
    segments: list[TripSegment] = []
    current: list[TelemetryReadingDTO] = []

    def close() -> None:
        mileages = [r.reported_mileage for r in current]
        segments.append(
            TripSegment(
                start_at=current[0].received_at,
                end_at=current[-1].received_at,
                start_mileage=min(mileages),
                end_mileage=max(mileages),
                reading_count=len(current),
            )
        )

    for reading in order_readings(readings):
        if current and reading.received_at - current[-1].received_at > max_gap:
            close()
            current = []
        current.append(reading)
    if current:
        close()
    return segments


def compute_day_digest(
    vehicle_id: str,
    batch_date: date,
    readings: Sequence[TelemetryReadingDTO],
) -> DayDigest:
    """Build the digest for a vehicle's accepted readings of one day.

    Raises:
        ValueError: If ``readings`` is empty.
    """
    ordered = order_readings(readings)
    if not ordered:
        raise ValueError(f"No readings to digest for {vehicle_id} on {batch_date}")
    leaves = tuple(leaf_hash(r, i) for i, r in enumerate(ordered))
    mileages = [r.reported_mileage for r in ordered]
    return DayDigest(
        vehicle_id=vehicle_id,
        batch_date=batch_date,
        root=merkle_root(leaves),
        leaves=leaves,
        reading_ids=tuple(r.id for r in ordered),
        start_mileage=min(mileages),
        end_mileage=max(mileages),
        segments=tuple(split_trips(ordered)),
    )
