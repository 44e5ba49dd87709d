"""RTP header parsing and payload extraction (RFC 3550)."""

import struct
from dataclasses import dataclass

from .errors import MalformedPacket

RTP_HEADER_SIZE = 12
RTP_VERSION = 2

_FIXED_HEADER = struct.Struct(">BBHII")


@dataclass(frozen=True)
class RtpHeader:
    version: int  # 2 bits
    padding: bool
    extension: bool
    csrc_count: int  # 4 bits
    marker: bool
    payload_type: int  # 7 bits
    sequence_number: int  # 16 bits, wraps
    timestamp: int  # 32 bits media clock, wraps
    ssrc: int  # 32 bits


def parse_rtp_header(data: bytes) -> RtpHeader:
    """Parse the 12 fixed header bytes."""
    if len(data) < RTP_HEADER_SIZE:
        raise MalformedPacket(f"RTP packet too short: {len(data)} bytes")

    first, second, sequence, timestamp, ssrc = _FIXED_HEADER.unpack_from(data)
    return RtpHeader(
        version=(first >> 6) & 0x03,
        padding=bool((first >> 5) & 0x01),
        extension=bool((first >> 4) & 0x01),
        csrc_count=first & 0x0F,
        marker=bool((second >> 7) & 0x01),
        payload_type=second & 0x7F,
        sequence_number=sequence,
        timestamp=timestamp,
        ssrc=ssrc,
    )


def serialize_rtp_header(header: RtpHeader) -> bytes:
    """Pack the fixed header fields back into 12 bytes."""
    first = (
        (header.version & 0x03) << 6
        | int(header.padding) << 5
        | int(header.extension) << 4
        | (header.csrc_count & 0x0F)
    )
    second = int(header.marker) << 7 | (header.payload_type & 0x7F)
    return _FIXED_HEADER.pack(
        first,
        second,
        header.sequence_number & 0xFFFF,
        header.timestamp & 0xFFFFFFFF,
        header.ssrc & 0xFFFFFFFF,
    )


def extract_payload(data: bytes) -> bytes:
    """Return the encoded payload after the header, CSRC list and extension."""
    header = parse_rtp_header(data)
    offset = RTP_HEADER_SIZE + header.csrc_count * 4
    if offset > len(data):
        raise MalformedPacket(
            f"CSRC list ({header.csrc_count} entries) exceeds packet of {len(data)} bytes"
        )

    if header.extension:
        if offset + 4 > len(data):
            raise MalformedPacket("Packet too short for RTP extension header")
        # Length is in 32-bit words, excluding the 4-byte extension header
        ext_words = struct.unpack_from(">H", data, offset + 2)[0]
        offset += 4 + ext_words * 4
        if offset > len(data):
            raise MalformedPacket(
                f"RTP extension of {ext_words} words exceeds packet of {len(data)} bytes"
            )

    return data[offset:]


def build_rtp_packet(
    header: RtpHeader,
    payload: bytes,
    csrcs: tuple[int, ...] = (),
    extension: tuple[int, bytes] | None = None,
) -> bytes:
    """Assemble a full packet.

    Args:
        header: Fixed header. csrc_count and the extension flag are taken
            from ``csrcs`` and ``extension``.
        payload: Encoded media.
        csrcs: Contributing source identifiers.
        extension: (profile, data) for a header extension; data is padded
            to a multiple of 4 bytes.
    """
    fixed = RtpHeader(
        version=header.version,
        padding=header.padding,
        extension=extension is not None,
        csrc_count=len(csrcs),
        marker=header.marker,
        payload_type=header.payload_type,
        sequence_number=header.sequence_number,
        timestamp=header.timestamp,
        ssrc=header.ssrc,
    )
    result = serialize_rtp_header(fixed)
    for csrc in csrcs:
        result += struct.pack(">I", csrc)
    if extension is not None:
        profile, ext_data = extension
        if len(ext_data) % 4:
            ext_data += b"\x00" * (4 - len(ext_data) % 4)
        result += struct.pack(">HH", profile, len(ext_data) // 4) + ext_data
    return result + payload


def ns_to_hrtime(ns: int) -> tuple[int, int]:
    return ns // 1_000_000_000, ns % 1_000_000_000


def hrtime_to_ms(hrtime: tuple[int, int] | list[int]) -> float:
    seconds, nanos = hrtime
    return (seconds * 1e9 + nanos) / 1e6


def ms_to_hrtime(ms: float) -> tuple[int, int]:
    return ns_to_hrtime(int(round(ms * 1e6)))
