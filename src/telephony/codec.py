"""Representation conversion for audio frames crossing the relay.

Twilio Media Streams and the Realtime API both carry G.711 mu-law as base64
text. The codec is negotiated once in the session configuration, so frames are
never re-encoded here: the only job is to validate the text-safe encoding and
hand the same bytes on in canonical form.
"""

from __future__ import annotations

import base64
import binascii

from agents.errors import InvalidFrameError

AudioFrame = str | bytes | bytearray | memoryview


def decode_frame(frame: AudioFrame) -> bytes:
    """Return the raw audio bytes carried by ``frame``."""

    if isinstance(frame, (bytes, bytearray, memoryview)):
        raw = bytes(frame)
    elif isinstance(frame, str):
        try:
            raw = base64.b64decode(frame, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidFrameError(f"Payload is not valid base64: {exc}") from exc
    else:
        raise InvalidFrameError(f"Unsupported frame type: {type(frame).__name__}")

    if not raw:
        raise InvalidFrameError("Empty audio frame.")
    return raw


def encode_frame(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def to_engine_format(frame: AudioFrame) -> str:
    """Frame from the telephony side, ready for ``input_audio_buffer.append``."""

    return encode_frame(decode_frame(frame))


def to_transport_format(frame: AudioFrame) -> str:
    """Frame from the engine side, ready for a Twilio ``media`` message."""

    return encode_frame(decode_frame(frame))
