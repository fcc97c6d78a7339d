"""Payload projections for characteristic values."""
import base64
import json
from dataclasses import dataclass, field

from .models import CharacteristicSample


@dataclass(frozen=True)
class DecodedPayload:
    """Human-readable views of one characteristic value"""
    hex: str
    text: str
    text_valid: bool
    json: dict = field(default_factory=dict)
    raw: bytes = b""

    def to_dict(self) -> dict:
        return {
            "hex": self.hex,
            "text": self.text,
            "text_valid": self.text_valid,
            "json": self.json,
            "raw_base64": base64.b64encode(self.raw).decode("ascii"),
            "length": len(self.raw),
        }


def hex_projection(data: bytes) -> str:
    """Lowercase two-digit bytes joined with ', ' (e.g. '7b, 22')"""
    return ", ".join(f"{b:02x}" for b in data)


def decode_payload(data: bytes | bytearray) -> DecodedPayload:
    """
    Decode raw bytes for display.

    The hex projection is always lossless. Invalid UTF-8 falls back to a
    replacement-character decode and empty JSON; nothing here raises.
    """
    data = bytes(data)
    try:
        text = data.decode("utf-8")
        text_valid = True
    except UnicodeDecodeError:
        text = data.decode("utf-8", errors="replace")
        text_valid = False

    parsed = {}
    if text_valid:
        try:
            candidate = json.loads(text.rstrip("\x00"))
            if isinstance(candidate, dict):
                parsed = candidate
        except ValueError:
            pass

    return DecodedPayload(
        hex=hex_projection(data),
        text=text,
        text_valid=text_valid,
        json=parsed,
        raw=data,
    )


def signed_int16(data: bytes, hi: int, lo: int) -> int:
    """Combine data[hi] and data[lo] big-endian into a signed 16-bit value."""
    value = (data[hi] << 8) | data[lo]
    return value - 0x10000 if value & 0x8000 else value


def parse_hex(value: str) -> bytes:
    """Parse '7b22', '7b 22', '7b, 22' or '0x7b,0x22' into bytes."""
    cleaned = value.replace(",", " ").split()
    if len(cleaned) > 1:
        return bytes(int(part, 16) for part in cleaned)
    single = cleaned[0] if cleaned else ""
    if single.lower().startswith("0x"):
        single = single[2:]
    return bytes.fromhex(single)


def sample_to_dict(sample: CharacteristicSample) -> dict:
    """Transport form of a sample: identity, millisecond timestamp and projections."""
    characteristic = sample.characteristic
    return {
        "address": characteristic.address,
        "characteristic": characteristic.uuid,
        "handle": characteristic.handle,
        "timestamp": int(sample.timestamp * 1000),
        **decode_payload(sample.value).to_dict(),
    }
