"""
Protocol handler for newline-delimited JSON packets
Handles packet creation, parsing, and validation
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
FRAME_DELIMITER = b'\n'


class PacketType(str, Enum):
    """Packet type enumeration"""
    LIST_REQUEST = "listRequest"
    LIST_RESPONSE = "listResponse"
    PULL_REQUEST = "pullRequest"
    PULL_RESPONSE = "pullResponse"
    PUSH_REQUEST = "pushRequest"
    PUSH_RESPONSE = "pushResponse"
    LEAVE = "leave"


# Array payload field each packet type must carry
PAYLOAD_FIELDS = {
    PacketType.LIST_REQUEST: None,
    PacketType.LIST_RESPONSE: "response",
    PacketType.PULL_REQUEST: "request",
    PacketType.PULL_RESPONSE: "response",
    PacketType.PUSH_REQUEST: "request",
    PacketType.PUSH_RESPONSE: "response",
    PacketType.LEAVE: None,
}

PULL_ITEM_FIELDS = ("filename", "checksum")
PUSH_ITEM_FIELDS = ("filename", "checksum", "data")


@dataclass
class ParseResult:
    """Outcome of parsing one frame: either a packet or an error message"""
    packet: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ProtocolHandler:
    """Handles wire packet operations"""

    VERSION = PROTOCOL_VERSION

    def build_packet(self, packet_type: PacketType, items: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Create a packet, attaching the payload field its type requires"""
        packet_type = PacketType(packet_type)
        packet = {"version": self.VERSION, "type": packet_type.value}
        field = PAYLOAD_FIELDS[packet_type]
        if field is not None:
            packet[field] = list(items) if items is not None else []
        return packet

    def serialize(self, packet: Dict[str, Any]) -> bytes:
        """Render a packet as one compact JSON frame, delimiter included"""
        # ASCII escapes: names of undecodable bytes on disk carry lone surrogates
        payload = json.dumps(packet, separators=(",", ":"))
        return payload.encode("utf-8") + FRAME_DELIMITER

    def parse_frame(self, frame: bytes) -> ParseResult:
        """Parse a single frame (delimiter already stripped) into a packet"""
        try:
            text = frame.decode("utf-8")
        except UnicodeDecodeError as e:
            return ParseResult(error=f"frame is not valid UTF-8: {e}")
        try:
            return ParseResult(packet=json.loads(text))
        except json.JSONDecodeError as e:
            return ParseResult(error=f"frame is not a JSON document: {e}")

    def validate(self, packet: Any, expected_type: Optional[str] = None) -> bool:
        """
        Checks that a parsed document is a well-formed packet.

        Args:
            packet: The parsed JSON document.
            expected_type: When given, the packet type must also equal this value.

        Returns:
            True if the packet carries the protocol version, a recognized type,
            and the array payload field that type requires.
        """
        if not isinstance(packet, dict):
            return False

        version = packet.get("version")
        # bool is an int subclass; "version": true must not pass as 1
        if isinstance(version, bool) or not isinstance(version, int) or version != self.VERSION:
            return False

        type_str = packet.get("type")
        if not isinstance(type_str, str):
            return False
        try:
            packet_type = PacketType(type_str)
        except ValueError:
            return False

        field = PAYLOAD_FIELDS[packet_type]
        if field is not None and not isinstance(packet.get(field), list):
            return False

        if expected_type is not None:
            return packet_type == expected_type
        return True

    def request_items(self, packet: Dict[str, Any], required_fields) -> Iterator[Dict[str, str]]:
        """Yield request items carrying every required string field; skip the rest"""
        for index, item in enumerate(packet.get("request", [])):
            if isinstance(item, dict) and all(isinstance(item.get(f), str) for f in required_fields):
                yield item
            else:
                logger.warning(f"Ignoring malformed {packet.get('type')} item #{index}: expected string fields {', '.join(required_fields)}.")

    def pull_items(self, packet: Dict[str, Any]) -> Iterator[Dict[str, str]]:
        return self.request_items(packet, PULL_ITEM_FIELDS)

    def push_items(self, packet: Dict[str, Any]) -> Iterator[Dict[str, str]]:
        return self.request_items(packet, PUSH_ITEM_FIELDS)

    def describe_items(self, packet: Dict[str, Any]) -> str:
        """Filenames of a request as '(a, b)' for log lines"""
        names = []
        for item in packet.get("request", []):
            if isinstance(item, dict):
                names.append(str(item.get("filename", "?")))
        return "(" + ", ".join(names) + ")"
