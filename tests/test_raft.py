import socket
import threading
import time
from types import SimpleNamespace

import pytest

from jobmesh.raft import Connection, RaftConsensus


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class FakeConnection:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send_data(self, data):
        if self.fail:
            raise OSError("broken pipe")
        self.sent.append(data)

    def start(self, handler, connection, stats):
        raise ConnectionError("closed")


class FakeLeader:
    def __init__(self):
        self.server = socket.create_server(("127.0.0.1", 0))
        self.server.settimeout(5)
        self.port = self.server.getsockname()[1]
        self.connect_request = b""
        self.passed_request = b""
        self.send_heartbeat = threading.Event()
        self.finished = threading.Event()
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        try:
            conn, _ = self.server.accept()
        except OSError:
            return
        with conn:
            buf = b""
            while buf.count(b"\n") < 2:
                chunk = conn.recv(128)
                if not chunk:
                    return
                buf += chunk
            self.connect_request = buf
            conn.sendall(b"ok?10.0.0.3?9000\n")
            self.send_heartbeat.wait(5)
            conn.sendall(b"42?A?10.0.0.3?9000\n")
            try:
                second, _ = self.server.accept()
            except OSError:
                return
            with second:
                data = b""
                while True:
                    header, sep, body = data.partition(b"\n")
                    if sep and len(body) >= int(header.rsplit(b"?", 1)[1]):
                        break
                    chunk = second.recv(128)
                    if not chunk:
                        break
                    data += chunk
                self.passed_request = data
                second.sendall(b"result")
            self.finished.wait(5)

    def close(self):
        self.finished.set()
        self.server.close()


def unused_port():
    with socket.create_server(("127.0.0.1", 0)) as sock:
        return sock.getsockname()[1]


@pytest.fixture
def leader(tmp_path):
    env = tmp_path / ".env"
    env.write_text("IP=10.0.0.1\n")
    raft = RaftConsensus(port=9000, heartbeat_time=60)
    raft.get_ips(str(env))
    handler = SimpleNamespace(crawl_id=3, database=None)
    raft.start(handler, [], assume_leader=True)
    yield raft
    raft.shutdown()


def test_get_ips_reads_seeds_and_own_ip(tmp_path):
    env = tmp_path / ".env"
    env.write_text("OTHER=1\nSEEDS=10.0.0.1,10.0.0.2\nIP=10.0.0.3\n")
    raft = RaftConsensus(port=9000)
    assert raft.get_ips(str(env)) == [("10.0.0.1", "9000"), ("10.0.0.2", "9000")]
    assert raft.get_my_ip() == "10.0.0.3"


def test_get_ips_missing_file_returns_empty(tmp_path):
    raft = RaftConsensus()
    assert raft.get_ips(str(tmp_path / "missing.env")) == []
    assert raft.get_my_ip() == ""


def test_handle_initial_data_sets_address_and_nodes():
    raft = RaftConsensus()
    raft.handle_initial_data(["ok", "1.2.3.4", "9000", "5.6.7.8", "9001", "dangling"])
    assert raft.get_my_ip() == "1.2.3.4"
    assert raft.my_port == "9000"
    assert raft.non_leader_nodes == [("5.6.7.8", "9001")]


def test_handle_initial_data_too_short_is_ignored():
    raft = RaftConsensus()
    raft.handle_initial_data(["ok", "1.2.3.4"])
    assert raft.get_my_ip() == ""
    assert raft.non_leader_nodes == []


def test_handle_heartbeat_adds_and_removes_nodes():
    raft = RaftConsensus()
    handler = SimpleNamespace(crawl_id=0, database=None)
    raft._handler = handler
    raft.handle_heartbeat("7?A?1.1.1.1?1?A?2.2.2.2?2?A?1.1.1.1?1")
    assert handler.crawl_id == 7
    assert raft.non_leader_nodes == [("1.1.1.1", "1"), ("2.2.2.2", "2")]
    raft.handle_heartbeat("8?R?1.1.1.1?1")
    assert handler.crawl_id == 8
    assert raft.non_leader_nodes == [("2.2.2.2", "2")]


def test_handle_heartbeat_bad_crawl_id_keeps_old_value():
    raft = RaftConsensus()
    handler = SimpleNamespace(crawl_id=5, database=None)
    raft._handler = handler
    raft.handle_heartbeat("abc?A?1.1.1.1?1")
    assert handler.crawl_id == 5
    assert raft.non_leader_nodes == [("1.1.1.1", "1")]


def test_leader_admits_nodes_and_reports_them(leader):
    assert leader.is_leader()
    first = leader.connect_new_node(FakeConnection(), "1.1.1.1?9000\n")
    second = leader.connect_new_node(FakeConnection(), "2.2.2.2?9001\n")
    assert first == "ok?1.1.1.1?9000\n"
    assert second == "ok?2.2.2.2?9001?1.1.1.1?9000\n"
    assert leader.get_current_ips() == ["1.1.1.1?9000", "2.2.2.2?9001", "10.0.0.1?9000"]
    assert leader.get_heartbeat() == "3?A?1.1.1.1?9000?A?2.2.2.2?9001\n"
    assert leader.get_heartbeat() == "3?\n"


def test_drop_connection_records_removal(leader):
    leader.connect_new_node(FakeConnection(), "1.1.1.1?9000\n")
    leader.connect_new_node(FakeConnection(), "2.2.2.2?9001\n")
    leader.get_heartbeat()
    leader.drop_connection(0)
    assert leader.get_current_ips() == ["2.2.2.2?9001", "10.0.0.1?9000"]
    assert leader.get_heartbeat() == "3?R?1.1.1.1?9000\n"


def test_connection_str_joins_ip_and_port():
    assert str(Connection(None, "1.1.1.1", "9000")) == "1.1.1.1?9000"


def test_heartbeat_sender_drops_failing_connection():
    raft = RaftConsensus(port=9000, heartbeat_time=0.01)
    handler = SimpleNamespace(crawl_id=3, database=None)
    raft.start(handler, [], assume_leader=True)
    try:
        raft.connect_new_node(FakeConnection(fail=True), "1.1.1.1?9000\n")
        good = FakeConnection()
        raft.connect_new_node(good, "2.2.2.2?9001\n")
        assert wait_for(lambda: len(raft.get_current_ips()) == 1 + 1)
        assert wait_for(lambda: any("R?1.1.1.1?9000" in s for s in good.sent))
        assert raft.get_current_ips()[0] == "2.2.2.2?9001"
    finally:
        raft.shutdown()


def test_unreachable_seed_makes_node_leader():
    raft = RaftConsensus(heartbeat_time=60)
    handler = SimpleNamespace(crawl_id=0, database=None)
    try:
        raft.start(handler, [("127.0.0.1", str(unused_port()))])
        assert raft.is_leader()
        assert raft.started
    finally:
        raft.shutdown()


def test_leader_runs_database_sweep_until_shutdown():
    calls = []

    class FakeDatabase:
        def update_current_jobs(self, stop_event):
            calls.append(stop_event)
            stop_event.wait(5)

    raft = RaftConsensus(heartbeat_time=60)
    handler = SimpleNamespace(crawl_id=0, database=FakeDatabase())
    raft.start(handler, [], assume_leader=True)
    assert raft.is_leader() is True
    assert wait_for(lambda: len(calls) == 1)
    assert not calls[0].is_set()
    raft.shutdown()
    assert calls[0].is_set()


def test_pass_request_without_leader_returns_empty():
    raft = RaftConsensus()
    assert raft.pass_request_to_leader("chck", "client", "hello") == ""


def test_follower_joins_leader_and_follows_heartbeat(tmp_path):
    env = tmp_path / ".env"
    env.write_text("IP=10.0.0.3\n")
    fake_leader = FakeLeader()
    raft = RaftConsensus(port=9000)
    raft.get_ips(str(env))
    handler = SimpleNamespace(crawl_id=0, database=None)
    try:
        raft.start(handler, [("127.0.0.1", str(fake_leader.port))])
        assert not raft.is_leader()
        assert fake_leader.connect_request == b"conn?node10.0.0.3?14\n10.0.0.3?9000\n"
        assert raft.connect_new_node(None, "x\n") == f"127.0.0.1?{fake_leader.port}\n"
        fake_leader.send_heartbeat.set()
        assert wait_for(lambda: handler.crawl_id == 42)
        assert raft.non_leader_nodes == [("10.0.0.3", "9000")]
        assert raft.pass_request_to_leader("chck", "client", "hello") == "result"
        assert fake_leader.passed_request == b"chck?client?5\nhello"
    finally:
        raft.shutdown()
        fake_leader.close()