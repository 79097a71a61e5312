"""
iBeacon payload decoding and target matching.

An iBeacon advertisement carries its identity inside Apple's manufacturer
data (company id 0x004C):

    offset  size  field
    0       1     type (0x02)
    1       1     length (0x15)
    2       16    proximity UUID
    18      2     major (big-endian)
    20      2     minor (big-endian)
    22      1     measured power (signed)

Everything here is pure: malformed input is reported as "no match", never
as an exception.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from typing import Mapping

# Apple company identifier used by iBeacon
IBEACON_MANUFACTURER_ID = 0x004C

# iBeacon type/length header
IBEACON_HEADER = b"\x02\x15"

# Minimum payload length including the measured power byte
IBEACON_MIN_LENGTH = 23

# Default beacon installed at the library entrance
DEFAULT_BEACON_UUID = "fda50693-a4e2-4fb1-afcf-c6eb07647825"
DEFAULT_BEACON_MAJOR = 10011
DEFAULT_BEACON_MINOR = 19641


@dataclass(frozen=True)
class TargetBeaconIdentity:
    """The single beacon we track. ``uuid`` is stored lowercase and hyphenated."""

    uuid: str
    major: int
    minor: int

    def __post_init__(self) -> None:
        try:
            normalized = str(uuid.UUID(self.uuid))
        except (ValueError, TypeError, AttributeError) as exc:
            raise ValueError(f"Invalid beacon UUID: {self.uuid!r}") from exc
        object.__setattr__(self, "uuid", normalized)
        for name in ("major", "minor"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFFFF:
                raise ValueError(f"Beacon {name} must be a 16-bit unsigned value, got {value}")


@dataclass(frozen=True)
class ScanObservation:
    """One advertisement as delivered by the scan source."""

    manufacturer_id: int
    payload: bytes
    observed_at: float


@dataclass(frozen=True)
class IBeaconFrame:
    uuid: str
    major: int
    minor: int
    measured_power: int


def load_target_from_env() -> TargetBeaconIdentity:
    """Build the target identity from BEACON_UUID / BEACON_MAJOR / BEACON_MINOR."""
    return TargetBeaconIdentity(
        uuid=os.getenv("BEACON_UUID", DEFAULT_BEACON_UUID),
        major=int(os.getenv("BEACON_MAJOR", str(DEFAULT_BEACON_MAJOR))),
        minor=int(os.getenv("BEACON_MINOR", str(DEFAULT_BEACON_MINOR))),
    )


def parse_ibeacon(payload: bytes | bytearray | None) -> IBeaconFrame | None:
    """
    Decode an Apple manufacturer payload as an iBeacon frame.

    Returns:
        The decoded frame, or None if the payload is not a well-formed iBeacon
    """
    if payload is None:
        return None
    data = bytes(payload)
    if len(data) < IBEACON_MIN_LENGTH:
        return None
    if data[0:2] != IBEACON_HEADER:
        return None

    measured_power = data[22]
    if measured_power > 127:
        measured_power -= 256

    return IBeaconFrame(
        uuid=str(uuid.UUID(bytes=data[2:18])),
        major=int.from_bytes(data[18:20], "big"),
        minor=int.from_bytes(data[20:22], "big"),
        measured_power=measured_power,
    )


def match(observation: ScanObservation, target: TargetBeaconIdentity) -> bool:
    """Return True only for an exact UUID/major/minor match under 0x004C."""
    if observation.manufacturer_id != IBEACON_MANUFACTURER_ID:
        return False
    try:
        frame = parse_ibeacon(observation.payload)
    except (TypeError, ValueError):
        return False
    if frame is None:
        return False
    if frame.uuid.lower() != target.uuid.lower():
        return False
    return frame.major == target.major and frame.minor == target.minor


def observations_from_manufacturer_data(
    manufacturer_data: Mapping[int, bytes], observed_at: float
) -> list[ScanObservation]:
    """Flatten a ``{company_id: payload}`` mapping into observations."""
    return [
        ScanObservation(
            manufacturer_id=int(company_id),
            payload=bytes(payload),
            observed_at=observed_at,
        )
        for company_id, payload in manufacturer_data.items()
    ]


def encode_ibeacon(target: TargetBeaconIdentity, measured_power: int = -59) -> bytes:
    """Build the manufacturer payload a beacon with ``target`` identity would send."""
    return (
        IBEACON_HEADER
        + uuid.UUID(target.uuid).bytes
        + target.major.to_bytes(2, "big")
        + target.minor.to_bytes(2, "big")
        + (measured_power & 0xFF).to_bytes(1, "big")
    )
