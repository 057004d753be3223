"""Leader election, membership tracking and heartbeats between API nodes."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .networking import ENTRY_DELIMITER, FIELD_DELIMITER, NetworkHandler

RESPONSE_OK = "ok"
HEARTBEAT_TIME = 1.0  # seconds
LEADER_DROPOUT_WAIT_TIME = 1.0  # seconds
DEFAULT_PORT = 8003


@dataclass
class Connection:
    """A node connected to the leader, with the address it can be reached on."""

    connection: Any
    ip: str
    port: str

    def __str__(self) -> str:
        return f"{self.ip}{FIELD_DELIMITER}{self.port}"


class RaftConsensus:
    """Joins the network of nodes, following the leader or acting as it.

    The handler passed to :meth:`start` carries a ``crawl_id`` attribute and,
    optionally, a ``database`` whose ``update_current_jobs(stop_event)`` runs
    on the leader.
    """

    def __init__(self, stats: Any = None, port: int = DEFAULT_PORT,
                 heartbeat_time: float = HEARTBEAT_TIME,
                 leader_dropout_wait_time: float = LEADER_DROPOUT_WAIT_TIME,
                 network_factory: Callable[[], NetworkHandler] = NetworkHandler) -> None:
        self.port = port
        self.heartbeat_time = heartbeat_time
        self.leader_dropout_wait_time = leader_dropout_wait_time
        self.leader = False
        self.started = False
        self.leader_ip = ""
        self.leader_port = ""
        self.my_ip = ""
        self.my_port = ""
        self.non_leader_nodes: list[tuple[str, str]] = []
        self._stats = stats
        self._network_factory = network_factory
        self._network: Optional[NetworkHandler] = None
        self._handler: Any = None
        self._others: list[Connection] = []
        self._node_connection_change = ""
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def __enter__(self) -> "RaftConsensus":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def _spawn(self, target: Callable, *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _close_network(self) -> None:
        network, self._network = self._network, None
        if network is not None:
            network.close()

    def start(self, handler: Any, ips: Iterable[tuple[str, str]], assume_leader: bool = False) -> None:
        """Connect to the leader among ``ips``, or become the leader if none answers."""
        self.started = True
        with self._lock:
            self._others = []
        self.leader = True
        self._handler = handler
        if not assume_leader:
            self._connect_to_leader(ips)

        if self.leader:
            self._spawn(self._heartbeat_sender)
            database = getattr(handler, "database", None)
            if database is not None:
                self._spawn(database.update_current_jobs, self._stop)
        else:
            self._spawn(self._listen_for_heartbeat)

    def shutdown(self) -> None:
        """Stop all background work and close the connection to the leader."""
        self._stop.set()
        self._close_network()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=1.0)

    def is_leader(self) -> bool:
        return self.leader

    def get_my_ip(self) -> str:
        return self.my_ip

    def _connect_to_leader(self, ips: Iterable[tuple[str, str]]) -> bool:
        for ip, port in ips:
            try:
                response = ""
                while not response.startswith(RESPONSE_OK):
                    ip, port, response = self._try_connecting_with_ip(ip, port)
            except (OSError, ValueError) as exc:
                print(exc)
                self._close_network()
                continue
            self.leader_ip, self.leader_port = ip, port
            self.leader = False
            return True
        return False

    def _try_connecting_with_ip(self, ip: str, port: str) -> tuple[str, str, str]:
        self._close_network()
        network = self._network_factory()
        self._network = network
        network.open_connection(ip, port)

        my_port = str(self.port)
        length = 2 + len(my_port) + len(self.my_ip)
        network.send_data(
            f"conn{FIELD_DELIMITER}node{self.my_ip}{FIELD_DELIMITER}{length}{ENTRY_DELIMITER}"
            f"{self.my_ip}{FIELD_DELIMITER}{my_port}{ENTRY_DELIMITER}"
        )
        response = network.receive_data()
        fields = response.split(FIELD_DELIMITER)
        if fields[0] != RESPONSE_OK:
            # Anything but ok is taken to name the real leader.
            if len(fields) != 2:
                raise ConnectionError(
                    f"Incorrect response from connect request. Size was {len(fields)}"
                )
            self._close_network()
            return fields[0], fields[1], response
        self.handle_initial_data(fields)
        return ip, port, response

    def handle_initial_data(self, initial_data: list[str]) -> None:
        """Take this node's address and the other followers from the leader's reply."""
        if len(initial_data) < 3:
            print("Incorrect initial data.")
            return
        self.my_ip = initial_data[1]
        self.my_port = initial_data[2]
        rest = initial_data[3:]
        self.non_leader_nodes.extend(zip(rest[0::2], rest[1::2]))

    def _listen_for_heartbeat(self) -> None:
        while not self._stop.is_set():
            network = self._network
            try:
                if network is None:
                    raise ConnectionError("No connection with the leader.")
                data = network.receive_data()
            except OSError:
                if self._stop.is_set() or not self._leader_dropped():
                    return
                continue
            self.handle_heartbeat(data)

    def _leader_dropped(self) -> bool:
        """Handle a lost leader; returns True if a new leader is being followed."""
        nodes = self.non_leader_nodes
        self.non_leader_nodes = []
        if not nodes or nodes[0] == (self.my_ip, self.my_port):
            print("Old leader dropped, we are the next in line, so we are now the leader.")
            self._close_network()
            self.start(self._handler, [], True)
            return False
        if self._stop.wait(self.leader_dropout_wait_time):
            return False
        print("Attempt connection with new leader.")
        if not self._connect_to_leader([nodes[0]]):
            print("Could not connect with the new leader.")
            return False
        return True

    def handle_heartbeat(self, heartbeat: str) -> None:
        """Apply a heartbeat: the crawl ID followed by node additions and removals."""
        if not heartbeat:
            return
        fields = heartbeat.split(FIELD_DELIMITER)
        try:
            crawl_id = int(fields[0])
        except ValueError:
            print("Error parsing crawlid from heartbeat.")
        else:
            if self._handler is not None:
                self._handler.crawl_id = crawl_id

        for i in range(1, len(fields) - 2, 3):
            tag = fields[i]
            node = (fields[i + 1], fields[i + 2])
            if tag == "A":
                if node not in self.non_leader_nodes:
                    self.non_leader_nodes.append(node)
            elif tag == "R":
                self.non_leader_nodes = [n for n in self.non_leader_nodes if n != node]
            else:
                print("Incorrect heartbeat")

    def connect_new_node(self, connection: Any, request: str) -> str:
        """Admit a joining node if leader, otherwise point it at the leader."""
        if not self.leader:
            return f"{self.leader_ip}{FIELD_DELIMITER}{self.leader_port}{ENTRY_DELIMITER}"

        fields = request[:-1].split(FIELD_DELIMITER)
        if len(fields) < 2:
            raise ValueError("Incorrect connect request.")
        with self._lock:
            initial_data = "".join(FIELD_DELIMITER + str(other) for other in self._others)
            conn = Connection(connection, fields[0], fields[1])
            self._others.append(conn)
            self._record_change("A", conn)
        self._spawn(self._listen_for_requests, connection)
        return f"{RESPONSE_OK}{FIELD_DELIMITER}{conn}{initial_data}{ENTRY_DELIMITER}"

    def _record_change(self, tag: str, conn: Connection) -> None:
        if self._node_connection_change:
            self._node_connection_change += FIELD_DELIMITER
        self._node_connection_change += f"{tag}{FIELD_DELIMITER}{conn}"

    def _listen_for_requests(self, connection: Any) -> None:
        try:
            while not self._stop.is_set():
                connection.start(self._handler, connection, self._stats)
        except Exception as exc:
            print(exc)

    def pass_request_to_leader(self, request_type: str, client: str, request: str) -> str:
        """Forward a request to the leader and return its reply, or "" on failure."""
        network = self._network_factory()
        try:
            network.open_connection(self.leader_ip, self.leader_port)
            network.send_data(
                f"{request_type}{FIELD_DELIMITER}{client}{FIELD_DELIMITER}"
                f"{len(request.encode())}{ENTRY_DELIMITER}{request}"
            )
            return network.receive_data(False)
        except (OSError, ValueError):
            print("Receive data gave an error")
            return ""
        finally:
            network.close()

    def _heartbeat_sender(self) -> None:
        while not self._stop.wait(self.heartbeat_time):
            with self._lock:
                data = self.get_heartbeat()
                # Back to front, so dropping a connection leaves the rest in place.
                for index in reversed(range(len(self._others))):
                    try:
                        self._others[index].connection.send_data(data)
                    except Exception:
                        print("Connection dropped.")
                        self.drop_connection(index)

    def get_heartbeat(self) -> str:
        """Build the next heartbeat and clear the pending membership changes."""
        with self._lock:
            crawl_id = getattr(self._handler, "crawl_id", 0) if self._handler is not None else 0
            heartbeat = f"{crawl_id}{FIELD_DELIMITER}{self._node_connection_change}{ENTRY_DELIMITER}"
            self._node_connection_change = ""
            return heartbeat

    def drop_connection(self, index: int) -> None:
        """Remove the connected node at ``index`` and announce its removal."""
        with self._lock:
            conn = self._others[index]
            self._record_change("R", conn)
            self._others[index] = self._others[-1]
            self._others.pop()

    def get_ips(self, file: str = ".env") -> list[tuple[str, str]]:
        """Read seed addresses and this node's IP from an env file."""
        try:
            with open(file, encoding="utf-8") as handle:
                lines = handle.read().splitlines()
        except OSError:
            print("Unable to open .env file.")
            return []
        total = 0
        output: list[tuple[str, str]] = []
        for line in lines:
            parts = line.rstrip("\r").split("=")
            if len(parts) >= 2 and parts[0] == "SEEDS":
                output.extend((ip, str(self.port)) for ip in parts[1].split(","))
                total += 1
            elif len(parts) >= 2 and parts[0] == "IP":
                self.my_ip = parts[1]
                self.my_port = str(self.port)
                total += 1
        if total < 2:
            print("No SEEDS or IP entry found in .env file or SEEDS or IP entry was empty.")
        return output

    def get_current_ips(self) -> list[str]:
        """Addresses of all known nodes, this one last."""
        with self._lock:
            result = [str(other) for other in self._others]
        result.append(f"{self.my_ip}{FIELD_DELIMITER}{self.my_port}")
        return result