import pytest

from peer import Identifier, Peer
from p2pdns import P2PDns
from p2pserver import P2PServer, PEER_PORT
from libchord.chord import Chord
from libdhash.dhash import Dhash
from libprotocol.libp2pproto import TcpTransport, P2PRequestPacket, P2PResponsePacket

DNS_HOST = "dns.test"
DNS_PORT = 7494


class LoopbackConnection(object):

    def __init__(self, reply_bytes):
        self.reply_bytes = reply_bytes


class LoopbackTransport(TcpTransport):
    """ Delivers packets to in-process handlers instead of sockets.

    Every packet still goes through the wire encoding both ways, and
    request()/notify() are the real TcpTransport ones.
    """

    def __init__(self, retries=0):
        super(LoopbackTransport, self).__init__(timeout=None, retries=retries)
        self.endpoints = {}
        self.sent = []

    def register(self, host, port, handler):
        self.endpoints[(host, int(port))] = handler

    def unregister(self, host, port):
        del self.endpoints[(host, int(port))]

    def send(self, dst_ip_addr, dst_port, packet):
        handler = self.endpoints.get((dst_ip_addr, int(dst_port)))
        if handler is None:
            raise ConnectionRefusedError(111, "Connection refused")
        self.sent.append((dst_ip_addr, int(dst_port), packet.op_word))
        req_pkt = P2PRequestPacket.parse(packet.encode_bytes().decode())
        res_pkt = handler(req_pkt)
        return LoopbackConnection(res_pkt.encode_bytes())

    def await_message(self, conn):
        return P2PResponsePacket.parse(conn.reply_bytes.decode())

    def close(self, conn):
        pass


@pytest.fixture
def transport():
    return LoopbackTransport()


@pytest.fixture
def dns(transport, tmp_path):
    server = P2PDns(db_name=str(tmp_path / "p2pdns.db"))
    transport.register(DNS_HOST, DNS_PORT, server._process_req)
    yield server
    server.dbconn.close()


@pytest.fixture
def make_peer(transport, dns, tmp_path):
    def _make_peer(peer_id, hostname=None):
        hostname = hostname or "peer%d" % peer_id
        identifier = Identifier(hostname, hostname, PEER_PORT, peer_id)
        peer = Peer(identifier)
        dhash = Dhash(peer, transport, str(tmp_path / hostname))
        chord = Chord(peer, dhash, transport, DNS_HOST, DNS_PORT, stabilisation_interval=0)
        transport.register(hostname, PEER_PORT, P2PServer(chord)._process_p2p_request)
        return chord
    return _make_peer
