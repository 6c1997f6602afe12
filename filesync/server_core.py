"""
Core session handling
Frames incoming bytes, validates packets, and runs the list/pull/push/leave commands
"""

import socket
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .exceptions import DirectoryAccessError, FileError, ProtocolError
from .file_manager import FileManager, find_match, is_valid_filename, resolve_filename
from .protocol_handler import FRAME_DELIMITER, PacketType, ProtocolHandler

logger = logging.getLogger(__name__)

RECV_BUFFER_SIZE = 64 * 1024
MAX_FRAME_SIZE = 64 * 1024 * 1024  # Largest frame accepted before the delimiter shows up


class SessionStatus(Enum):
    """What the multiplexer should do with a session after handling it"""
    KEEP = "keep"
    CLOSE = "close"


@dataclass(eq=False)
class Session:
    """State of one connected client"""
    sock: socket.socket
    slot_index: int
    peer_address: str
    buffer: bytearray = field(default_factory=bytearray)

    def has_complete_frame(self) -> bool:
        return FRAME_DELIMITER in self.buffer

    def pop_frame(self) -> Optional[bytes]:
        """Cut the first complete frame off the buffer, without its delimiter"""
        end = self.buffer.find(FRAME_DELIMITER)
        if end == -1:
            return None
        frame = bytes(self.buffer[:end])
        del self.buffer[:end + len(FRAME_DELIMITER)]
        return frame


class SessionHandler:
    """Handles one message at a time for any session it is given"""

    def __init__(self, file_manager: FileManager, protocol: Optional[ProtocolHandler] = None):
        self.file_manager = file_manager
        self.protocol = protocol or ProtocolHandler()

    def handle_readable(self, session: Session) -> SessionStatus:
        """
        Handles a session whose socket is readable or whose buffer holds a whole frame.

        At most one frame is processed per call. Errors caused by the client only
        ever close this session.

        Args:
            session: The session to service.

        Returns:
            SessionStatus.CLOSE if the session must be torn down, KEEP otherwise.

        Raises:
            DirectoryAccessError: If the served directory can no longer be opened.
        """
        peer = session.peer_address
        try:
            if not session.has_complete_frame():
                chunk = session.sock.recv(RECV_BUFFER_SIZE)
                if not chunk: # An empty read means the peer closed the socket
                    logger.info(f"Client at {peer} closed the connection.")
                    return SessionStatus.CLOSE
                session.buffer.extend(chunk)

            frame = session.pop_frame()
            if frame is None:
                if len(session.buffer) > MAX_FRAME_SIZE:
                    raise ProtocolError(f"Frame exceeds {MAX_FRAME_SIZE} bytes without a delimiter.")
                return SessionStatus.KEEP # Wait for the rest of the frame
            return self._process_frame(session, frame)

        except DirectoryAccessError:
            raise
        except ProtocolError as e:
            logger.error(f"Protocol error encountered with client at {peer}: {e} Closing connection.")
        except OSError as e: # Covers ConnectionError and socket timeouts
            logger.warning(f"Client at {peer} unexpectedly closed connection: {e}")
        except Exception as e: # Catch-all so one client can never take the server down
            logger.critical(f"Unexpected critical error occurred while handling client at {peer}: {e}", exc_info=True)
        return SessionStatus.CLOSE

    def _process_frame(self, session: Session, frame: bytes) -> SessionStatus:
        """Parse, validate, and dispatch a single frame"""
        result = self.protocol.parse_frame(frame)
        if not result.ok:
            logger.error(f"Client at {session.peer_address} sent a malformed frame ({result.error}). Closing connection.")
            return SessionStatus.CLOSE

        packet = result.packet
        logger.debug(f"Received from {session.peer_address}: {frame[:200]!r}")
        if not self.protocol.validate(packet):
            logger.warning(f"Ignoring invalid packet from client at {session.peer_address}.")
            return SessionStatus.KEEP

        return self._dispatch(session, packet)

    def _dispatch(self, session: Session, packet: Dict[str, Any]) -> SessionStatus:
        """Dispatch a validated packet to the handler for its type"""
        handler_map = {
            PacketType.LIST_REQUEST: self._handle_list,
            PacketType.PULL_REQUEST: self._handle_pull,
            PacketType.PUSH_REQUEST: self._handle_push,
            PacketType.LEAVE: self._handle_leave,
        }

        packet_type = PacketType(packet["type"])
        handler_method = handler_map.get(packet_type)
        if handler_method is None:
            # Response packets are well-formed but nothing a server answers
            logger.warning(f"Unknown type {packet_type.value} received from client at {session.peer_address}. Closing connection.")
            return SessionStatus.CLOSE
        return handler_method(session, packet)

    def _send_packet(self, sock: socket.socket, packet: Dict[str, Any]):
        """
        Sends one packet to the client.

        Raises:
            ConnectionError: If the socket fails during the send.
        """
        try:
            sock.sendall(self.protocol.serialize(packet))
        except socket.timeout:
            raise
        except OSError as e:
            raise ConnectionError(f"Failed to send {packet.get('type')} due to socket error: {e}") from e

    def _handle_list(self, session: Session, packet: Dict[str, Any]) -> SessionStatus:
        logger.info(f"Client at {session.peer_address} requested a list of files")
        items = [entity.to_wire() for entity in self.file_manager.scan()]
        self._send_packet(session.sock, self.protocol.build_packet(PacketType.LIST_RESPONSE, items))
        return SessionStatus.KEEP

    def _handle_pull(self, session: Session, packet: Dict[str, Any]) -> SessionStatus:
        logger.info(f"Client at {session.peer_address} requested to pull files {self.protocol.describe_items(packet)}")
        catalog = self.file_manager.scan()
        items = []
        for requested in self.protocol.pull_items(packet):
            entity = find_match(catalog, requested["filename"], requested["checksum"])
            if entity is None:
                logger.debug(f"No match for '{requested['filename']}' ({requested['checksum']}); omitted from pullResponse.")
                continue
            try:
                items.append(entity.to_wire(data=self.file_manager.read_base64(entity)))
            except FileError as e:
                logger.error(f"Client at {session.peer_address}: {e}")
        self._send_packet(session.sock, self.protocol.build_packet(PacketType.PULL_RESPONSE, items))
        return SessionStatus.KEEP

    def _handle_push(self, session: Session, packet: Dict[str, Any]) -> SessionStatus:
        """
        Stores pushed files without ever overwriting an existing one.

        Each file is written under a collision-free name and its checksum is
        recomputed from disk. A file whose checksum disagrees with the one the
        client declared is deleted again, but is still reported back.
        """
        peer = session.peer_address
        logger.info(f"Client at {peer} requested to push files {self.protocol.describe_items(packet)}")
        existing = self.file_manager.existing_filenames()
        items = []
        for pushed in self.protocol.push_items(packet):
            filename = pushed["filename"]
            if not is_valid_filename(filename):
                logger.warning(f"Client at {peer}: rejecting unsafe filename {filename!r}.")
                continue
            try:
                resolved = resolve_filename(filename, existing)
                entity = self.file_manager.write_base64(resolved, pushed["data"])
            except FileError as e:
                logger.error(f"Client at {peer}: could not store '{filename}': {e}")
                continue

            if resolved != filename:
                logger.info(f"'{filename}' already exists; stored as '{resolved}'.")
            if entity.checksum == pushed["checksum"]:
                existing.add(resolved)
            else:
                logger.error(f"Checksum mismatch for '{resolved}' (declared {pushed['checksum']}, written file is {entity.checksum}), probable write or decode error. Deleting file.")
                self.file_manager.remove(entity)
            items.append(entity.to_wire())

        self._send_packet(session.sock, self.protocol.build_packet(PacketType.PUSH_RESPONSE, items))
        return SessionStatus.KEEP

    def _handle_leave(self, session: Session, packet: Dict[str, Any]) -> SessionStatus:
        logger.info(f"Client at {session.peer_address} cleanly closed connection")
        return SessionStatus.CLOSE
