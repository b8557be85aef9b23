# p2pserver.py
# ------------
# The P2P server component
# Accepts ring protocol connections and dispatches them to
# the peer's Chord handlers, one thread per connection
import logging
import socket
import threading

import utils
from peer import Identifier
from libprotocol import libp2pproto
from libprotocol.libp2pproto import P2PRequestPacket, P2PTransportError

logger = logging.getLogger(__name__)

# CONSTANTS
PEER_PORT = 7495
MAX_PACKET_SIZE = 4096


class P2PServer(object):

    def __init__(self, chord, port=PEER_PORT):
        self.chord = chord
        self.port = port
        self.server_socket = None

    def p2p_socket_worker(self):
        while True:
            try:
                conn, addr = self.server_socket.accept()
            except OSError:
                # socket closed by shutdown()
                break
            conn_thread = threading.Thread(target=self._handle_p2p_connection, args=(conn,), daemon=True)
            conn_thread.start()

    def run(self):
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind(('', self.port))
        self.server_socket.listen()
        logger.info("P2P server listening on port:%d", self.port)

        p2p_server_thread = threading.Thread(name='P2P SERVER THREAD', target=self.p2p_socket_worker, daemon=True)
        p2p_server_thread.start()
        return p2p_server_thread

    def shutdown(self):
        if self.server_socket is not None:
            self.server_socket.close()
            self.server_socket = None

    def _handle_p2p_connection(self, conn):
        data_string = ""
        try:
            while True:
                data_bytes = conn.recv(MAX_PACKET_SIZE)
                if not data_bytes:
                    logger.debug("Connection closed before a full request arrived")
                    break
                try:
                    data_string = data_string + data_bytes.decode("utf-8")
                    req_pkt = P2PRequestPacket.parse(data_string)
                except ValueError as err:
                    if err.args[0] == libp2pproto.INCOMPLETE_PACKET_ERROR:
                        continue
                    conn.sendall(libp2pproto.construct_malformed_res().encode_bytes())
                    break

                res_pkt = self._process_p2p_request(req_pkt)
                conn.sendall(res_pkt.encode_bytes())
                break
        except OSError as err:
            # fire-and-forget senders hang up without reading the reply
            logger.debug("Connection dropped: %s", err)
        finally:
            conn.close()

    ##
    ## P2P
    ##
    def _process_p2p_request(self, req_pkt):
        op_word, args = req_pkt.op_word, req_pkt.args
        logger.debug("Received %s", req_pkt)

        try:
            if op_word == libp2pproto.FIND_SUCCESSOR_OP_WORD:
                sender = Identifier.parse(args[libp2pproto.FIND_SUCCESSOR_SENDER_INDEX])
                position = utils.hex_to_int(args[libp2pproto.FIND_SUCCESSOR_POSITION_INDEX])
                if not utils.is_id_valid(position):
                    return libp2pproto.construct_malformed_res()
                owner = self.chord.handle_find_successor(sender, position)
                return libp2pproto.construct_identifier_res(owner)

            if op_word == libp2pproto.GET_PREDECESSOR_OP_WORD:
                sender = Identifier.parse(args[libp2pproto.GET_PREDECESSOR_SENDER_INDEX])
                return libp2pproto.construct_identifier_res(self.chord.handle_get_predecessor(sender))

            if op_word == libp2pproto.PREDECESSOR_NOTIFICATION_OP_WORD:
                sender = Identifier.parse(args[libp2pproto.PREDECESSOR_NOTIFICATION_SENDER_INDEX])
                new_predecessor = Identifier.parse(args[libp2pproto.PREDECESSOR_NOTIFICATION_PEER_INDEX])
                self.chord.handle_predecessor_notification(sender, new_predecessor)
                return libp2pproto.construct_empty_ok_res()

            if op_word == libp2pproto.SUCCESSOR_NOTIFICATION_OP_WORD:
                sender = Identifier.parse(args[libp2pproto.SUCCESSOR_NOTIFICATION_SENDER_INDEX])
                new_successor = Identifier.parse(args[libp2pproto.SUCCESSOR_NOTIFICATION_PEER_INDEX])
                self.chord.handle_successor_notification(sender, new_successor)
                return libp2pproto.construct_empty_ok_res()

            if op_word == libp2pproto.MOVE_FILE_OP_WORD:
                sender = Identifier.parse(args[libp2pproto.MOVE_FILE_SENDER_INDEX])
                file_id = args[libp2pproto.MOVE_FILE_FILE_ID_INDEX]
                if not utils.is_id_valid(utils.hex_to_int(file_id)):
                    return libp2pproto.construct_malformed_res()
                filename = libp2pproto.decode_filename(args[libp2pproto.MOVE_FILE_FILENAME_INDEX])
                content = libp2pproto.decode_content(args[libp2pproto.MOVE_FILE_CONTENT_INDEX])
                file_id, filename, hostname = self.chord.handle_move_file(sender, file_id, filename, content)
                return libp2pproto.construct_move_file_res(file_id, filename, hostname)

            if op_word == libp2pproto.NETWORK_JOIN_OP_WORD:
                self.chord.handle_network_join(Identifier.parse(args[libp2pproto.NETWORK_JOIN_PEER_INDEX]))
                return libp2pproto.construct_empty_ok_res()

            if op_word == libp2pproto.NETWORK_EXIT_OP_WORD:
                self.chord.handle_network_exit(Identifier.parse(args[libp2pproto.NETWORK_EXIT_PEER_INDEX]))
                return libp2pproto.construct_empty_ok_res()
        except (IndexError, ValueError) as err:
            logger.warning("Malformed %s request: %s", op_word, err)
            return libp2pproto.construct_malformed_res()
        except P2PTransportError as err:
            logger.error("Unable to serve %s: %s", op_word, err)
            return libp2pproto.construct_error_res()
        except Exception:
            logger.exception("Unexpected failure serving %s", op_word)
            return libp2pproto.construct_error_res()

        return libp2pproto.construct_unknown_res()
