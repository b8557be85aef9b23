# libp2pdns.py
# ------------
# Peer <-> discovery server exchanges. Uses the same framing as
# the ring protocol.
from libprotocol import libp2pproto
from libprotocol.libp2pproto import P2PRequestPacket, P2PResponsePacket, P2PTransportError
from peer import Identifier

DNS_PORT = 7494

REGISTER_REQ_OP_WORD = "REGISTER"
REGISTER_REQ_PEER_INDEX = 0
REGISTER_RES_ACCEPTED_INDEX = 0
REGISTER_RES_RANDOM_PEER_INDEX = 1

JOINED_REQ_OP_WORD = libp2pproto.NETWORK_JOIN_OP_WORD
JOINED_REQ_PEER_INDEX = 0

EXIT_REQ_OP_WORD = libp2pproto.NETWORK_EXIT_OP_WORD
EXIT_REQ_PEER_INDEX = 0


## Construct Packets
def construct_register_req(identifier):
    return P2PRequestPacket(REGISTER_REQ_OP_WORD, [identifier.stringify()])

def construct_joined_req(identifier):
    return P2PRequestPacket(JOINED_REQ_OP_WORD, [identifier.stringify()])

def construct_exit_req(identifier):
    return P2PRequestPacket(EXIT_REQ_OP_WORD, [identifier.stringify()])

def construct_register_res(random_peer):
    return P2PResponsePacket(libp2pproto.OK_RES_CODE, libp2pproto.OK_RES_MSG, ["1", random_peer.stringify()])


## Exchanges
def send_dns_register(transport, dns_ip_addr, dns_port, identifier):
    """ send_dns_register(...) -> (accepted, random_peer)

    random_peer is None when the registration was rejected.
    """
    try:
        res_pkt = transport.request(dns_ip_addr, dns_port, construct_register_req(identifier))
    except P2PTransportError as err:
        if err.code == libp2pproto.REJECTED_RES_CODE:
            return False, None
        raise

    if len(res_pkt.data) < 2 or res_pkt.data[REGISTER_RES_ACCEPTED_INDEX] != "1":
        return False, None
    try:
        random_peer = Identifier.parse(res_pkt.data[REGISTER_RES_RANDOM_PEER_INDEX])
    except ValueError:
        raise P2PTransportError("malformed registration reply", code=libp2pproto.MALFORMED_RES_CODE)
    return True, random_peer

def send_dns_joined(transport, dns_ip_addr, dns_port, identifier):
    transport.notify(dns_ip_addr, dns_port, construct_joined_req(identifier))

def send_dns_remove_entry(transport, dns_ip_addr, dns_port, identifier):
    transport.notify(dns_ip_addr, dns_port, construct_exit_req(identifier))
