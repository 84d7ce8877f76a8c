"""Wire codec for signaling commands.

One command per line, encoded as a JSON object::

    {"type":"offer","sdp":"v=0..."}
    {"type":"candidate","sdpMid":"0","sdpMLineIndex":0,"sdpCandidate":"candidate:..."}
"""

from __future__ import annotations

import json
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from signaling.errors import ProtocolDecodeError

# Decode failures are returned, so callers can write ``isinstance(result, DecodeError)``.
DecodeError = ProtocolDecodeError

FRAME_FIELD = "<frame>"


class CommandKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    UNKNOWN = "unknown"


class SignalingCommand(BaseModel):
    """A single signaling message.

    ``type`` keeps the wire string as received, so a command of an unknown kind
    still reports what the peer sent; ``kind`` is the interpreted value.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    type: StrictStr
    sdp: StrictStr | None = None
    candidate_mid: StrictStr | None = Field(default=None, alias="sdpMid")
    candidate_mline_index: StrictInt | None = Field(default=None, alias="sdpMLineIndex")
    candidate_data: StrictStr | None = Field(default=None, alias="sdpCandidate")

    @property
    def kind(self) -> CommandKind:
        try:
            return CommandKind(self.type)
        except ValueError:
            return CommandKind.UNKNOWN

    @classmethod
    def offer(cls, sdp: str) -> SignalingCommand:
        return cls(type=CommandKind.OFFER.value, sdp=sdp)

    @classmethod
    def answer(cls, sdp: str) -> SignalingCommand:
        return cls(type=CommandKind.ANSWER.value, sdp=sdp)

    @classmethod
    def candidate(cls, data: str, *, mid: str | None = None, mline_index: int | None = None) -> SignalingCommand:
        return cls(
            type=CommandKind.CANDIDATE.value,
            candidate_mid=mid,
            candidate_mline_index=mline_index,
            candidate_data=data,
        )


# Fields that must be present for a known kind to be usable.
_REQUIRED_FIELDS: dict[CommandKind, tuple[str, str]] = {
    CommandKind.OFFER: ("sdp", "sdp"),
    CommandKind.ANSWER: ("sdp", "sdp"),
    CommandKind.CANDIDATE: ("candidate_data", "sdpCandidate"),
}


def encode(command: SignalingCommand) -> str:
    """Encode a command as a single line of JSON text (no trailing newline)."""

    # JSON escapes control characters inside strings, so the result never spans lines.
    return command.model_dump_json(by_alias=True, exclude_none=True)


def decode(text: str) -> SignalingCommand | DecodeError:
    """Decode one frame.

    Never raises for malformed input: a ``DecodeError`` naming the offending
    field is returned instead. Unknown ``type`` values decode successfully.
    """

    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        return DecodeError(FRAME_FIELD, f"not valid JSON ({exc})")

    if not isinstance(payload, dict):
        return DecodeError(FRAME_FIELD, f"expected a JSON object, got {type(payload).__name__}")

    try:
        command = SignalingCommand.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or FRAME_FIELD
        return DecodeError(field, first["msg"])

    required = _REQUIRED_FIELDS.get(command.kind)
    if required is not None:
        attr, wire_name = required
        if getattr(command, attr) is None:
            return DecodeError(wire_name, f"required for {command.type!r} commands")

    return command
