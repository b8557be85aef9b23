# peer.py
# -------
# Stores peer info like peer id, successor, predecessor
import functools
import socket

from prettytable import PrettyTable, HRuleStyle

import utils
from libchord.fingertable import FingerTable


@functools.total_ordering
class Identifier(object):
    """ Position of a peer (or of any key) on the ring, plus how to reach it.

    Equality and ordering only look at the numeric id.
    """

    __slots__ = ("hostname", "ip_addr", "port", "id")

    def __init__(self, hostname, ip_addr, port, peer_id):
        object.__setattr__(self, "hostname", hostname)
        object.__setattr__(self, "ip_addr", ip_addr)
        object.__setattr__(self, "port", int(port))
        object.__setattr__(self, "id", int(peer_id))

    @staticmethod
    def from_seed(hostname, port, ip_addr=None, seed=None):
        if seed is None:
            peer_id = utils.generate_peer_hash(hostname, port)
        else:
            peer_id = utils.consistent_hash(seed)
        if ip_addr is None:
            ip_addr = hostname
        return Identifier(hostname, ip_addr, port, peer_id)

    @staticmethod
    def parse(token):
        tokens = token.split(",")
        if len(tokens) != 4:
            raise ValueError("malformed identifier %r" % (token,))
        hex_id, hostname, ip_addr, port = tokens
        return Identifier(hostname, ip_addr, int(port), utils.hex_to_int(hex_id))

    def __setattr__(self, name, value):
        raise AttributeError("Identifier is immutable")

    def value(self):
        return self.id

    def hex_id(self):
        return utils.int_to_hex(self.id)

    def is_valid(self):
        return utils.is_id_valid(self.id)

    def stringify(self):
        return "%s,%s,%s,%d" % (self.hex_id(), self.hostname, self.ip_addr, self.port)

    def __eq__(self, other):
        if not isinstance(other, Identifier):
            return NotImplemented
        return self.id == other.id

    def __lt__(self, other):
        if not isinstance(other, Identifier):
            return NotImplemented
        return self.id < other.id

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return "Identifier(id=%d, host=%s:%d)" % (self.id, self.hostname, self.port)

    def __str__(self):
        return "%d (%s) @ %s:%d" % (self.id, self.hex_id(), self.hostname, self.port)


def local_identifier(port, hostname=None, seed=None):
    hostname = hostname or socket.gethostname()
    try:
        ip_addr = socket.gethostbyname(hostname)
    except socket.error:
        ip_addr = hostname
    return Identifier.from_seed(hostname, port, ip_addr=ip_addr, seed=seed)


class Peer(object):

    def __init__(self, identifier):
        self.identifier   = identifier
        self.predecessor  = identifier
        self.successor    = identifier
        self.finger_table = FingerTable(utils.M_EXPONENT, identifier)

    @property
    def peer_id(self):
        return self.identifier.id

    def is_alone(self):
        return self.successor == self.identifier

    def print_id(self):
        print(self.identifier.id)

    def print_successor(self):
        print(self.successor)

    def print_predecessor(self):
        print(self.predecessor)

    def print_finger_table(self):
        tab = PrettyTable(["Index", "Ring Position", "Peer Id", "Host"])
        for index, entry in enumerate(self.finger_table):
            tab.add_row([index, self.finger_table.ring_position_of_index(index),
                         entry.id, "%s:%d" % (entry.hostname, entry.port)])
        tab.hrules = HRuleStyle.ALL
        print("Finger Table for %s:" % (self.identifier.hostname,))
        print(tab)

    def __str__(self):
        return ("Peer:\n"
                "\tid: %s\n"
                "\tpredecessor: %s\n"
                "\tsuccessor: %s\n") % (self.identifier, self.predecessor, self.successor)
