import socket
import threading

import dpkt
import pytest

import webserver
import webutil


class FakeConnection:
    '''
    Connection that hands out the given chunks one per recv and records what is sent.
    recv_error / send_error are raised instead of reading / after fail_after sendall calls.
    '''

    def __init__(self, chunks=(), recv_error=None, send_error=None, fail_after=0):
        self.chunks = list(chunks)
        self.recv_error = recv_error
        self.send_error = send_error
        self.fail_after = fail_after
        self.sent = bytearray()
        self.send_calls = 0

    def recv(self, bufsize):
        if self.recv_error is not None:
            raise self.recv_error
        if not self.chunks:
            return b''
        chunk = self.chunks.pop(0)
        assert len(chunk) <= bufsize
        return chunk

    def sendall(self, data):
        if self.send_error is not None and self.send_calls >= self.fail_after:
            raise self.send_error
        self.send_calls += 1
        self.sent += data


def recv_all(sock):
    chunks = []
    while True:
        data = sock.recv(4096)
        if not data:
            break
        chunks.append(data)
    return b''.join(chunks)


@pytest.fixture
def content_root(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    root = tmp_path / webutil.CONTENT_ROOT
    root.mkdir()
    return root


@pytest.fixture
def fake_conn():
    return FakeConnection


@pytest.fixture
def parse_response():
    return dpkt.http.Response


@pytest.fixture
def exchange():
    '''
    Runs process_connection over a socket pair and returns the raw response bytes.
    '''
    def run(request, shutdown=None):
        server_side, client_side = socket.socketpair()
        with server_side, client_side:
            client_side.sendall(request)
            client_side.shutdown(socket.SHUT_WR)
            result = webserver.process_connection(server_side, shutdown)
            assert result == 0
            server_side.close()
            return recv_all(client_side)
    return run


@pytest.fixture
def running_server(content_root):
    shutdown = threading.Event()
    server = webserver.Server(port=0, shutdown=shutdown)
    thread = threading.Thread(target=server.start, daemon=True)
    thread.start()
    yield server
    shutdown.set()
    thread.join(timeout=5)


@pytest.fixture
def fetch():
    def run(port, request, close_write=False):
        with socket.create_connection(('127.0.0.1', port), timeout=5) as sock:
            sock.sendall(request)
            if close_write:
                sock.shutdown(socket.SHUT_WR)
            return recv_all(sock)
    return run
