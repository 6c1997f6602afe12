import os
import sys
import signal
import socket
import logging
import argparse
import selectors
import threading
from typing import Any, Iterator, List, Optional, Tuple

from . import __version__
from .exceptions import CapacityError, DirectoryAccessError
from .file_manager import FileManager
from .protocol_handler import PROTOCOL_VERSION
from .server_core import Session, SessionHandler, SessionStatus

# --- Server Configuration Constants ---
DEFAULT_HOST = "0.0.0.0"
DEFAULT_DIRECTORY = "."
DEFAULT_LOG_FILE = "serverLog.txt"
HELP_ALIASES = ("-?", "/?", "?") # Accepted alongside -h/--help

# Behavior Configuration
MAX_CLIENTS = 1024 # Capacity of the session table
LISTEN_BACKLOG = MAX_CLIENTS
CLIENT_SOCKET_TIMEOUT = 60.0 # Timeout for individual socket operations with a client
SELECT_TIMEOUT = 1.0 # Longest wait for readiness before checking for a shutdown request

# Logging Configuration
LOG_FORMAT = '%(asctime)s - %(threadName)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def configure_logging(log_file: str = DEFAULT_LOG_FILE, level: int = logging.INFO):
    """Log to an append-only file and to the console."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file, mode='a'), # Append mode
            logging.StreamHandler(sys.stdout) # Also log to console
        ]
    )


# --- Session Table ---
class SessionTable:
    """
    Fixed-capacity table of live sessions indexed by slot.

    A None entry marks a free slot. The table is the only record of which
    client sockets are live.
    """
    def __init__(self, capacity: int = MAX_CLIENTS):
        self.slots: List[Optional[Session]] = [None] * capacity

    @property
    def capacity(self) -> int:
        return len(self.slots)

    def allocate(self) -> int:
        """
        Finds the first free slot.

        Raises:
            CapacityError: If every slot is in use.
        """
        for index, occupant in enumerate(self.slots):
            if occupant is None:
                return index
        raise CapacityError(f"All {self.capacity} session slots are in use.")

    def assign(self, index: int, session: Session):
        if self.slots[index] is not None:
            raise ValueError(f"Slot {index} is already occupied.")
        self.slots[index] = session

    def release(self, index: int):
        self.slots[index] = None

    def __iter__(self) -> Iterator[Session]:
        return (session for session in self.slots if session is not None)

    def __len__(self) -> int:
        return sum(1 for _ in self)


# --- Main Server Class ---
class FileSyncServer:
    """
    Serves a flat directory to many clients from a single control loop.

    The loop waits for readiness on the listening socket and every live
    session, accepts new connections into the session table, and hands
    readable sessions to the SessionHandler one message at a time.
    """

    def __init__(self, port: int, directory: str = DEFAULT_DIRECTORY, host: str = DEFAULT_HOST,
                 max_clients: int = MAX_CLIENTS):
        """
        Initializes the FileSyncServer instance.

        Args:
            port: TCP port to listen on (0 picks a free port).
            directory: The directory whose files are served and written.
            host: Interface address to bind.
            max_clients: Capacity of the session table.

        Raises:
            SystemExit: If the directory is not accessible.
        """
        self.host: str = host
        self.port: int = port
        self.directory: str = directory
        self.server_socket: Optional[socket.socket] = None
        self.selector: Optional[selectors.BaseSelector] = None
        self.sessions: SessionTable = SessionTable(max_clients)
        self.running: bool = False
        self.shutdown_event: threading.Event = threading.Event() # For coordinating graceful shutdown
        self.ready_event: threading.Event = threading.Event() # Set once the socket is listening

        self._perform_startup_checks()
        self.file_manager = FileManager(directory)
        self.session_handler = SessionHandler(self.file_manager)


    def _perform_startup_checks(self):
        """Performs critical checks before the server starts listening."""
        if not os.path.isdir(self.directory):
            logger.critical(f"Fatal: Could not access provided directory: '{self.directory}', are you sure that's a directory?")
            raise SystemExit(f"Startup failed: '{self.directory}' is not a directory.")
        if not os.access(self.directory, os.R_OK | os.W_OK | os.X_OK):
            logger.critical(f"Fatal: Insufficient permissions on directory: '{os.path.abspath(self.directory)}'.")
            raise SystemExit(f"Startup failed: No read/write access to '{self.directory}'.")
        logger.info(f"Serving files from directory: '{os.path.abspath(self.directory)}'")


    def install_signal_handlers(self):
        """Stop gracefully on SIGINT/SIGTERM. Must be called from the main thread."""
        if hasattr(signal, 'SIGTERM'): # SIGTERM is not available on all platforms
            signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)


    def _signal_handler(self, signum: int, frame: Optional[Any]):
        """Handles termination signals (SIGINT, SIGTERM) for graceful shutdown."""
        sig_name = signal.Signals(signum).name
        logger.warning(f"{sig_name} received by server. Initiating graceful shutdown sequence...")
        self.stop()


    @property
    def bound_address(self) -> Optional[Tuple[str, int]]:
        """The (host, port) actually bound, once listening."""
        if self.server_socket is None:
            return None
        return self.server_socket.getsockname()[:2]


    def _open_listening_socket(self):
        """Creates, binds, and registers the listening socket."""
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1) # Allow reuse of address
        try:
            self.server_socket.bind((self.host, self.port))
            self.server_socket.listen(LISTEN_BACKLOG)
            self.server_socket.setblocking(False)
        except OSError as e:
            logger.critical(f"Fatal: Failed to bind server socket to port {self.port}: {e}. Check if the port is already in use or if you have necessary permissions.")
            self.server_socket.close()
            self.server_socket = None
            raise SystemExit(f"Startup failed: could not listen on port {self.port}.") from e

        self.selector = selectors.DefaultSelector()
        self.selector.register(self.server_socket, selectors.EVENT_READ, data=None)


    def start(self):
        """
        Binds the listening socket and runs the control loop until stop() is called.

        Raises:
            SystemExit: If the socket cannot be set up or the directory becomes inaccessible.
        """
        if self.running:
            logger.warning("Server is already running. Start command ignored.")
            return

        self.shutdown_event.clear()
        self._open_listening_socket()
        self.running = True
        self.ready_event.set()

        host, port = self.bound_address
        logger.info(f"File Sync Server {__version__} (protocol version {PROTOCOL_VERSION}) listening on {host}:{port}.")
        logger.info(f"Maximum concurrent clients: {self.sessions.capacity}.")

        try:
            while not self.shutdown_event.is_set():
                self._poll_once()
        except DirectoryAccessError as e:
            logger.critical(f"Fatal: {e}")
            raise SystemExit(f"Server aborted: {e}") from e
        finally:
            self._close_all()
            self.running = False
            logger.info("Server connection loop has terminated.")


    def _poll_once(self):
        """Waits for readiness once and services every ready socket."""
        # Sessions with an already buffered frame must not wait for the socket
        pending = [session for session in self.sessions if session.has_complete_frame()]
        timeout = 0 if pending else SELECT_TIMEOUT

        ready = {session.slot_index: session for session in pending}
        accept_ready = False
        for key, _ in self.selector.select(timeout):
            if key.data is None:
                accept_ready = True
            else:
                ready[key.data.slot_index] = key.data

        if accept_ready:
            self._accept_connection()
        for slot_index in sorted(ready):
            self._service_session(ready[slot_index])


    def _accept_connection(self):
        """Accepts one pending connection into a free slot, or turns it away."""
        try:
            client_conn, client_address = self.server_socket.accept()
        except BlockingIOError:
            return
        except OSError as e:
            logger.error(f"Socket error occurred while accepting connections: {e}")
            return

        peer = f"{client_address[0]}:{client_address[1]}"
        logger.info(f"New connection request from client at {peer}")
        try:
            slot_index = self.sessions.allocate()
        except CapacityError as e:
            logger.warning(f"  Connection request denied; no more sockets available ({e})")
            client_conn.close()
            return

        client_conn.settimeout(CLIENT_SOCKET_TIMEOUT)
        session = Session(sock=client_conn, slot_index=slot_index, peer_address=peer)
        self.sessions.assign(slot_index, session)
        self.selector.register(client_conn, selectors.EVENT_READ, data=session)
        logger.info(f"  Connection request granted; adding to list of sockets as {slot_index}")


    def _service_session(self, session: Session):
        if self.session_handler.handle_readable(session) is SessionStatus.CLOSE:
            self._close_session(session)


    def _close_session(self, session: Session):
        """Closes a session's socket and frees its slot in the same step."""
        try:
            self.selector.unregister(session.sock)
        except (KeyError, ValueError):
            pass # Never registered or already unregistered
        self.sessions.release(session.slot_index)
        try:
            session.sock.close()
        except OSError as e:
            logger.error(f"Error encountered while closing socket of {session.peer_address}: {e}")
        logger.debug(f"Released slot {session.slot_index} ({session.peer_address}).")


    def _close_all(self):
        """Closes every session and the listening socket."""
        for session in list(self.sessions):
            self._close_session(session)
        if self.selector:
            self.selector.close()
            self.selector = None
        if self.server_socket:
            try:
                self.server_socket.close()
            except OSError as e:
                logger.error(f"Error encountered while closing server socket: {e}")
            self.server_socket = None


    def stop(self):
        """Asks the control loop to shut down; it exits within SELECT_TIMEOUT."""
        if self.shutdown_event.is_set():
            logger.info("Server shutdown is already in progress or has completed.")
            return
        logger.warning("Server shutdown sequence initiated by call to stop()...")
        self.shutdown_event.set()


def parse_args(argv=None) -> argparse.Namespace:
    """
    Quick examples:
      filesync-server -p 9000
      filesync-server -p 9000 -d ~/Music -l /var/log/filesync.log
    """
    parser = argparse.ArgumentParser(prog="filesync-server", description="Serve a directory to file sync clients.")
    parser.add_argument("-p", "--port", type=int, required=True, help="port to listen on")
    parser.add_argument("-d", "--directory", default=DEFAULT_DIRECTORY, help="directory to serve (default: current directory)")
    parser.add_argument("-l", "--log-file", default=DEFAULT_LOG_FILE, help=f"append-only log file (default: {DEFAULT_LOG_FILE})")
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"interface to bind (default: {DEFAULT_HOST})")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output")
    argv = sys.argv[1:] if argv is None else argv
    if any(arg in HELP_ALIASES for arg in argv):
        parser.print_help()
        parser.exit()
    args = parser.parse_args(argv)
    if not 0 <= args.port <= 65535:
        parser.error(f"port {args.port} is out of range (0-65535)")
    return args


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_file, logging.DEBUG if args.verbose else logging.INFO)
    logger.info(f"File Sync Server {__version__} starting (PID {os.getpid()}).")

    try:
        server = FileSyncServer(args.port, directory=args.directory, host=args.host)
        server.install_signal_handlers()
        server.start()
    except SystemExit as e:
        logger.critical(f"Server startup process was aborted: {e}")
        sys.exit(1)
    logger.info("Server application has completed its full termination sequence.")


if __name__ == "__main__":
    main()
