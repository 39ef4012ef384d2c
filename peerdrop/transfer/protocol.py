"""
Data Channel Protocol

Design Decision: Framing on the Data Channel
============================================

Options Considered:
1. Everything as JSON (base64 payloads)
   - One message shape, easy to debug
   - ~33% size overhead on every chunk

2. Length-prefixed binary header + payload
   - Compact, self-describing
   - Browsers would need a custom parser

3. Text control messages + binary chunks with a fixed-width id prefix
   - Data channels already preserve message boundaries
   - Text vs binary tells control and data apart for free
   - Browser peers can build frames with TextEncoder + ArrayBuffer

Decision: Option 3

Message Format:
```
Control (text):
{"type": "file-start", "transferId": "...", "name": "...",
 "size": 12345, "fileType": "image/png"}

Chunk (binary):
+---------------------------+----------------------+
| Transfer ID (36 bytes)    | Payload (N bytes)    |
+---------------------------+----------------------+
```

The id field is the UTF-8 transfer id right-padded with spaces (or cut) to
exactly 36 bytes, so a UUID fills it with no padding at all.
"""

import json
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Tuple, Union

from ..errors import ProtocolError

logger = logging.getLogger(__name__)


TRANSFER_ID_BYTES = 36
PAD_BYTE = b' '


class ControlMessageType(Enum):
    """Control message variants sent as text frames."""
    FILE_START = "file-start"


@dataclass
class FileStart:
    """Announces a transfer; always precedes its first chunk."""
    transfer_id: str
    name: str
    size: int
    file_type: str = ''

    type = ControlMessageType.FILE_START

    def to_dict(self) -> dict:
        return {
            'type': self.type.value,
            'transferId': self.transfer_id,
            'name': self.name,
            'size': self.size,
            'fileType': self.file_type,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> 'FileStart':
        try:
            transfer_id = data['transferId']
            name = data['name']
            size = data['size']
        except KeyError as e:
            raise ProtocolError(f"file-start missing field {e}") from e

        if not isinstance(transfer_id, str) or not transfer_id:
            raise ProtocolError("file-start has an invalid transferId")
        if not isinstance(name, str):
            raise ProtocolError("file-start has an invalid name")
        # bool is an int subclass; a JSON true is not a size
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise ProtocolError(f"file-start has an invalid size: {size!r}")

        file_type = data.get('fileType') or ''
        if not isinstance(file_type, str):
            file_type = str(file_type)

        return cls(transfer_id=transfer_id, name=name, size=size, file_type=file_type)


ControlMessage = FileStart

_CONTROL_TYPES = {
    ControlMessageType.FILE_START: FileStart,
}


def parse_control_message(text: Union[str, bytes]) -> ControlMessage:
    """
    Parse a text frame into its control message variant.

    Raises:
        ProtocolError: invalid JSON, unknown type, or bad fields
    """
    try:
        data = json.loads(text)
    except (ValueError, TypeError) as e:
        raise ProtocolError(f"Control message is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Control message is not a JSON object")

    try:
        msg_type = ControlMessageType(data.get('type'))
    except ValueError:
        raise ProtocolError(f"Unknown control message type: {data.get('type')!r}")

    return _CONTROL_TYPES[msg_type].from_dict(data)


# === Chunk frames ===

def encode_transfer_id(transfer_id: str) -> bytes:
    """Encode a transfer id into the fixed 36-byte wire field."""
    raw = transfer_id.encode('utf-8')
    return raw[:TRANSFER_ID_BYTES].ljust(TRANSFER_ID_BYTES, PAD_BYTE)


def decode_transfer_id(field: bytes) -> str:
    """Decode the 36-byte wire field back into a transfer id."""
    if len(field) != TRANSFER_ID_BYTES:
        raise ProtocolError(
            f"Transfer id field must be {TRANSFER_ID_BYTES} bytes, got {len(field)}"
        )
    # A cut can land inside a multi-byte character
    return field.decode('utf-8', errors='ignore').rstrip(' ')


def normalize_transfer_id(transfer_id: str) -> str:
    """The id as a receiver sees it after a trip through the wire field."""
    return decode_transfer_id(encode_transfer_id(transfer_id))


def encode_chunk(transfer_id: str, payload: bytes) -> bytes:
    """Build a binary chunk frame."""
    return encode_transfer_id(transfer_id) + bytes(payload)


def decode_chunk(frame: bytes) -> Tuple[str, bytes]:
    """
    Split a binary chunk frame.

    Returns:
        (transfer_id, payload) tuple
    """
    if len(frame) < TRANSFER_ID_BYTES:
        raise ProtocolError(f"Chunk frame too short: {len(frame)} bytes")

    view = memoryview(frame)
    transfer_id = decode_transfer_id(bytes(view[:TRANSFER_ID_BYTES]))
    return transfer_id, bytes(view[TRANSFER_ID_BYTES:])


def calculate_progress(done: int, total: int) -> int:
    """
    Progress percentage for `done` of `total` bytes.

    Rounded, but held at 99 until every byte is accounted for.
    """
    if total <= 0 or done >= total:
        return 100
    percent = round(min(done / total, 1.0) * 100)
    return max(0, min(percent, 99))
