# libp2pproto.py
# --------------
# Processing and helper code for P2P node <-> P2P node
# communication
import base64
import logging
import socket
from urllib.parse import quote, unquote

import utils

logger = logging.getLogger(__name__)

MALFORMED_PACKET_ERROR  = 1
INCOMPLETE_PACKET_ERROR = 2

MAX_PACKET_SIZE = 4096
REQUEST_TIMEOUT = 10.0
REQUEST_RETRIES = 0

FIND_SUCCESSOR_OP_WORD = "FIND_SUCCESSOR"
FIND_SUCCESSOR_SENDER_INDEX = 0
FIND_SUCCESSOR_POSITION_INDEX = 1

GET_PREDECESSOR_OP_WORD = "GET_PREDECESSOR"
GET_PREDECESSOR_SENDER_INDEX = 0

PREDECESSOR_NOTIFICATION_OP_WORD = "PREDECESSOR_NOTIFICATION"
PREDECESSOR_NOTIFICATION_SENDER_INDEX = 0
PREDECESSOR_NOTIFICATION_PEER_INDEX = 1

SUCCESSOR_NOTIFICATION_OP_WORD = "SUCCESSOR_NOTIFICATION"
SUCCESSOR_NOTIFICATION_SENDER_INDEX = 0
SUCCESSOR_NOTIFICATION_PEER_INDEX = 1

MOVE_FILE_OP_WORD = "MOVE_FILE"
MOVE_FILE_SENDER_INDEX = 0
MOVE_FILE_FILE_ID_INDEX = 1
MOVE_FILE_FILENAME_INDEX = 2
MOVE_FILE_CONTENT_INDEX = 3

NETWORK_JOIN_OP_WORD = "NETWORK_JOIN"
NETWORK_JOIN_PEER_INDEX = 0

NETWORK_EXIT_OP_WORD = "NETWORK_EXIT"
NETWORK_EXIT_PEER_INDEX = 0

OK_RES_CODE = 200
OK_RES_MSG  = "OK"

REJECTED_RES_CODE = 403
REJECTED_RES_MSG  = "REJECTED"

FILE_NOT_FOUND_CODE = 404
FILE_NOT_FOUND_MSG  = "FILE NOT FOUND"

MALFORMED_RES_CODE = 422
MALFORMED_RES_MSG  = "MALFORMED"

ERROR_RES_CODE = 500
ERROR_RES_MSG  = "ERROR"

UNKNOWN_RES_CODE = 600
UNKNOWN_RES_MSG  = "UNKNOWN OPERATION"


class P2PTransportError(Exception):
    """ A ring exchange could not be completed. """

    def __init__(self, message, code=None):
        super(P2PTransportError, self).__init__(message)
        self.code = code


class P2PRequestPacket(object):
    delimeter = "\r\n"

    @staticmethod
    def parse(string):
        if P2PRequestPacket.delimeter in string:
            tokens = utils.remove_empty_string_from_arr(string.strip().split(" "))

            if len(tokens) <= 0:
                raise ValueError(MALFORMED_PACKET_ERROR)

            return P2PRequestPacket(tokens[0], tokens[1:])
        else:
            raise ValueError(INCOMPLETE_PACKET_ERROR)

    def __init__(self, op_word, args):
        self.op_word = op_word
        self.args = args

    def stringify(self):
        return self.op_word.strip() + " " \
                + " ".join([str(a) for a in self.args]) \
                + P2PRequestPacket.delimeter

    def encode_bytes(self):
        return self.stringify().encode()

    def __repr__(self):
        return "P2PRequestPacket(%s, %d args)" % (self.op_word, len(self.args))


class P2PResponsePacket(object):
    delimeter = "\r\n"

    @staticmethod
    def parse(string):
        if P2PResponsePacket.delimeter in string:
            status_line, body = string.split(P2PResponsePacket.delimeter, 1)
            status_tokens = status_line.split(" ")
            if len(status_tokens) < 3:
                # CHECK MALFORM STATUS LINE
                raise ValueError(MALFORMED_PACKET_ERROR)

            try:
                code = int(status_tokens[0])
                num_data_bytes = int(status_tokens[-1])
            except ValueError:
                raise ValueError(MALFORMED_PACKET_ERROR)

            body_len = len(body.encode())
            if body_len < num_data_bytes:
                ## still got more to receive
                raise ValueError(INCOMPLETE_PACKET_ERROR)
            if body_len > num_data_bytes:
                # data do not match data length
                raise ValueError(MALFORMED_PACKET_ERROR)

            msg = " ".join(status_tokens[1:-1])
            datalines = utils.remove_empty_string_from_arr(body.split(P2PResponsePacket.delimeter))
            data = list(map(lambda x: x.strip(), datalines))
            return P2PResponsePacket(code, msg, data)
        else:
            ## still got more to receive
            raise ValueError(INCOMPLETE_PACKET_ERROR)

    def __init__(self, code, msg, data):
        self.code = code
        self.msg  = msg
        self.data = data

    def stringify(self):
        datalines = ""
        for item_line in self.data:
            datalines = datalines + item_line + P2PResponsePacket.delimeter

        data_bytes_len = len(datalines.encode())
        status_line = "%d %s %d%s" % (self.code, self.msg, data_bytes_len, P2PResponsePacket.delimeter)
        return status_line + datalines

    def encode_bytes(self):
        return self.stringify().encode()

    def __repr__(self):
        return "P2PResponsePacket(%d %s, %r)" % (self.code, self.msg, self.data)


## Field encoding
def encode_filename(filename):
    return quote(filename, safe="")

def decode_filename(token):
    return unquote(token)

def encode_content(content):
    # an empty token would vanish when the request line is split
    return base64.b64encode(content).decode() or "="

def decode_content(token):
    if token == "=":
        return b""
    return base64.b64decode(token.encode())


## Construct Request Packets
def construct_find_successor_req(sender, position):
    return P2PRequestPacket(FIND_SUCCESSOR_OP_WORD, [sender.stringify(), utils.int_to_hex(position)])

def construct_get_predecessor_req(sender):
    return P2PRequestPacket(GET_PREDECESSOR_OP_WORD, [sender.stringify()])

def construct_predecessor_notification(sender, new_predecessor):
    return P2PRequestPacket(PREDECESSOR_NOTIFICATION_OP_WORD,
                            [sender.stringify(), new_predecessor.stringify()])

def construct_successor_notification(sender, new_successor):
    return P2PRequestPacket(SUCCESSOR_NOTIFICATION_OP_WORD,
                            [sender.stringify(), new_successor.stringify()])

def construct_move_file_req(sender, file_id, filename, content):
    return P2PRequestPacket(MOVE_FILE_OP_WORD,
                            [sender.stringify(), file_id, encode_filename(filename), encode_content(content)])

def construct_network_join_notification(joiner):
    return P2PRequestPacket(NETWORK_JOIN_OP_WORD, [joiner.stringify()])

def construct_network_exit_notification(leaver):
    return P2PRequestPacket(NETWORK_EXIT_OP_WORD, [leaver.stringify()])


## Construct Response Packets
def construct_identifier_res(identifier):
    return P2PResponsePacket(OK_RES_CODE, OK_RES_MSG, [identifier.stringify()])

def construct_move_file_res(file_id, filename, hostname):
    return P2PResponsePacket(OK_RES_CODE, OK_RES_MSG, [file_id, encode_filename(filename), hostname])

def construct_empty_ok_res():
    return P2PResponsePacket(OK_RES_CODE, OK_RES_MSG, [])

def construct_rejected_res():
    return P2PResponsePacket(REJECTED_RES_CODE, REJECTED_RES_MSG, [])

def construct_error_res():
    return P2PResponsePacket(ERROR_RES_CODE, ERROR_RES_MSG, [])

def construct_fnf_res():
    return P2PResponsePacket(FILE_NOT_FOUND_CODE, FILE_NOT_FOUND_MSG, [])

def construct_malformed_res():
    return P2PResponsePacket(MALFORMED_RES_CODE, MALFORMED_RES_MSG, [])

def construct_unknown_res():
    return P2PResponsePacket(UNKNOWN_RES_CODE, UNKNOWN_RES_MSG, [])


## Send TCP Packets
class TcpTransport(object):
    """ Blocking one-request-per-connection transport.

    request() retries the whole exchange `retries` extra times on socket
    errors. A reply that arrives but is malformed or carries a non-OK
    status is never retried.
    """

    def __init__(self, timeout=REQUEST_TIMEOUT, retries=REQUEST_RETRIES):
        self.timeout = timeout
        self.retries = retries

    def send(self, dst_ip_addr, dst_port, packet):
        tcp_socket = socket.create_connection((dst_ip_addr, int(dst_port)), timeout=self.timeout)
        try:
            tcp_socket.sendall(packet.encode_bytes())
        except socket.error:
            tcp_socket.close()
            raise
        return tcp_socket

    def await_message(self, tcp_socket):
        data_string = ""
        while True:
            data = tcp_socket.recv(MAX_PACKET_SIZE)
            if not data:
                raise P2PTransportError("connection closed before a full reply arrived")
            data_string = data_string + data.decode("utf-8")
            try:
                return P2PResponsePacket.parse(data_string)
            except ValueError as err:
                if err.args[0] == INCOMPLETE_PACKET_ERROR:
                    continue
                raise P2PTransportError("malformed reply", code=MALFORMED_RES_CODE)

    def close(self, tcp_socket):
        tcp_socket.close()

    def request(self, dst_ip_addr, dst_port, packet):
        last_error = None
        for attempt in range(self.retries + 1):
            try:
                tcp_socket = self.send(dst_ip_addr, dst_port, packet)
                try:
                    res_pkt = self.await_message(tcp_socket)
                finally:
                    self.close(tcp_socket)
            except socket.error as err:
                last_error = err
                logger.warning("Attempt %d of %s to %s:%s failed: %s",
                               attempt + 1, packet.op_word, dst_ip_addr, dst_port, err)
                continue

            if res_pkt.code != OK_RES_CODE:
                raise P2PTransportError("%s to %s:%s answered %d %s" % (
                    packet.op_word, dst_ip_addr, dst_port, res_pkt.code, res_pkt.msg), code=res_pkt.code)
            return res_pkt

        raise P2PTransportError("%s to %s:%s failed: %s" % (packet.op_word, dst_ip_addr, dst_port, last_error))

    def notify(self, dst_ip_addr, dst_port, packet):
        try:
            self.close(self.send(dst_ip_addr, dst_port, packet))
        except socket.error as err:
            raise P2PTransportError("%s to %s:%s failed: %s" % (packet.op_word, dst_ip_addr, dst_port, err))
