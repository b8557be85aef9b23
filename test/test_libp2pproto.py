import pytest

from conftest import LoopbackTransport
from peer import Identifier
from libprotocol import libp2pproto
from libprotocol.libp2pproto import P2PRequestPacket, P2PResponsePacket, P2PTransportError

SENDER = Identifier("peer10", "10.0.0.10", 7495, 10)


def test_request_packet_waits_for_delimiter():
    raw = libp2pproto.construct_find_successor_req(SENDER, 300).stringify()

    with pytest.raises(ValueError) as excinfo:
        P2PRequestPacket.parse(raw[:-2])
    assert excinfo.value.args[0] == libp2pproto.INCOMPLETE_PACKET_ERROR

    req_pkt = P2PRequestPacket.parse(raw)
    assert req_pkt.op_word == libp2pproto.FIND_SUCCESSOR_OP_WORD
    assert Identifier.parse(req_pkt.args[0]) == SENDER
    assert req_pkt.args[1] == "012c"


def test_response_packet_length_framing():
    raw = libp2pproto.construct_identifier_res(SENDER).stringify()

    with pytest.raises(ValueError) as excinfo:
        P2PResponsePacket.parse(raw[:-5])
    assert excinfo.value.args[0] == libp2pproto.INCOMPLETE_PACKET_ERROR

    with pytest.raises(ValueError) as excinfo:
        P2PResponsePacket.parse(raw + "extra\r\n")
    assert excinfo.value.args[0] == libp2pproto.MALFORMED_PACKET_ERROR

    res_pkt = P2PResponsePacket.parse(raw)
    assert res_pkt.code == libp2pproto.OK_RES_CODE
    assert Identifier.parse(res_pkt.data[0]).hostname == "peer10"


def test_response_status_message_with_spaces():
    res_pkt = P2PResponsePacket.parse(libp2pproto.construct_unknown_res().stringify())

    assert res_pkt.code == libp2pproto.UNKNOWN_RES_CODE
    assert res_pkt.msg == libp2pproto.UNKNOWN_RES_MSG
    assert res_pkt.data == []


def test_move_file_fields_survive_encoding():
    content = b"\x00\xff line one\r\nline two "
    req_pkt = P2PRequestPacket.parse(
        libp2pproto.construct_move_file_req(SENDER, "00ab", "my notes.txt", content).stringify())

    assert libp2pproto.decode_filename(req_pkt.args[libp2pproto.MOVE_FILE_FILENAME_INDEX]) == "my notes.txt"
    assert libp2pproto.decode_content(req_pkt.args[libp2pproto.MOVE_FILE_CONTENT_INDEX]) == content


def test_empty_content_keeps_its_token():
    req_pkt = P2PRequestPacket.parse(
        libp2pproto.construct_move_file_req(SENDER, "00ab", "empty", b"").stringify())

    assert len(req_pkt.args) == 4
    assert libp2pproto.decode_content(req_pkt.args[libp2pproto.MOVE_FILE_CONTENT_INDEX]) == b""


def test_request_raises_with_status_code_on_error_reply():
    transport = LoopbackTransport()
    transport.register("peer50", 7495, lambda req: libp2pproto.construct_error_res())

    with pytest.raises(P2PTransportError) as excinfo:
        transport.request("peer50", 7495, libp2pproto.construct_get_predecessor_req(SENDER))
    assert excinfo.value.code == libp2pproto.ERROR_RES_CODE


def test_request_refused_connection_raises():
    transport = LoopbackTransport()

    with pytest.raises(P2PTransportError) as excinfo:
        transport.request("nobody", 7495, libp2pproto.construct_get_predecessor_req(SENDER))
    assert excinfo.value.code is None


class FlakyTransport(LoopbackTransport):

    def __init__(self, failures, retries):
        super(FlakyTransport, self).__init__(retries=retries)
        self.failures = failures

    def send(self, dst_ip_addr, dst_port, packet):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionResetError(104, "Connection reset by peer")
        return super(FlakyTransport, self).send(dst_ip_addr, dst_port, packet)


def test_request_retries_socket_errors():
    transport = FlakyTransport(failures=1, retries=1)
    transport.register("peer50", 7495, lambda req: libp2pproto.construct_identifier_res(SENDER))

    res_pkt = transport.request("peer50", 7495, libp2pproto.construct_get_predecessor_req(SENDER))

    assert Identifier.parse(res_pkt.data[0]) == SENDER


def test_request_gives_up_after_retries():
    transport = FlakyTransport(failures=2, retries=1)
    transport.register("peer50", 7495, lambda req: libp2pproto.construct_identifier_res(SENDER))

    with pytest.raises(P2PTransportError):
        transport.request("peer50", 7495, libp2pproto.construct_get_predecessor_req(SENDER))
