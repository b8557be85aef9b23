# p2pdns.py
# ---------
# Serves the function of introducing existing peers
# to new peers who want to join
#
# Sqlite3 DB Format -- <peer-id, hostname, ip-address, port, joined>
import argparse
import logging
import signal
import socket
import sqlite3
import sys

from peer import Identifier
from libprotocol import libp2pdns, libp2pproto
from libprotocol.libp2pproto import P2PRequestPacket

logger = logging.getLogger(__name__)

PORT = libp2pdns.DNS_PORT
DB_NAME = 'p2pdns.db'
MAX_MSG_LEN = 1024


class P2PDns(object):

    def __init__(self, port=PORT, db_name=DB_NAME):
        self.port = port
        self.server_socket = None
        self.dbconn = sqlite3.connect(db_name, check_same_thread=False)
        self._setup_db()

    def _setup_db(self):
        query = """
            CREATE TABLE IF NOT EXISTS p2pdns (peer_id INTEGER PRIMARY KEY, hostname TEXT, ip_address TEXT,
                                               port INTEGER, joined INTEGER DEFAULT 0)
        """
        cursor = self.dbconn.cursor()
        cursor.execute(query)
        self.dbconn.commit()

    def _process_register(self, identifier):
        """ Returns a random joined peer (or identifier itself when none has
        joined yet), or None when the id is taken.
        """
        cursor = self.dbconn.cursor()
        cursor.execute("SELECT peer_id FROM p2pdns WHERE peer_id=?", (identifier.id,))
        if cursor.fetchone() is not None:
            logger.warning("Rejecting %s, id %d is already registered", identifier.hostname, identifier.id)
            return None

        select_query = """
            SELECT peer_id, hostname, ip_address, port FROM p2pdns WHERE joined=1 ORDER BY RANDOM() LIMIT 1
        """
        cursor.execute(select_query)
        row = cursor.fetchone()
        random_peer = identifier if row is None else Identifier(row[1], row[2], row[3], row[0])

        insert_query = """
            INSERT INTO p2pdns (peer_id, hostname, ip_address, port, joined) VALUES (?, ?, ?, ?, 0)
        """
        cursor.execute(insert_query, (identifier.id, identifier.hostname, identifier.ip_addr, identifier.port))
        self.dbconn.commit()
        return random_peer

    def _process_joined(self, identifier):
        upsert_query = """
            INSERT OR REPLACE INTO p2pdns (peer_id, hostname, ip_address, port, joined) VALUES (?, ?, ?, ?, 1)
        """
        cursor = self.dbconn.cursor()
        cursor.execute(upsert_query, (identifier.id, identifier.hostname, identifier.ip_addr, identifier.port))
        self.dbconn.commit()

    def _process_remove(self, identifier):
        delete_query = """
            DELETE FROM p2pdns WHERE peer_id = ?
        """
        cursor = self.dbconn.cursor()
        cursor.execute(delete_query, (identifier.id,))
        self.dbconn.commit()

    def get_peers(self):
        cursor = self.dbconn.cursor()
        cursor.execute("SELECT peer_id, hostname, ip_address, port, joined FROM p2pdns ORDER BY peer_id")
        return cursor.fetchall()

    def _process_req(self, req):
        op_word, arguments = req.op_word, req.args
        try:
            identifier = Identifier.parse(arguments[0])
        except (IndexError, ValueError):
            return libp2pproto.construct_malformed_res()
        logger.info("OP CODE: %s\tPeer: %s", op_word, identifier)

        if op_word == libp2pdns.REGISTER_REQ_OP_WORD:
            random_peer = self._process_register(identifier)
            if random_peer is None:
                return libp2pproto.construct_rejected_res()
            return libp2pdns.construct_register_res(random_peer)
        elif op_word == libp2pdns.JOINED_REQ_OP_WORD:
            self._process_joined(identifier)
            return libp2pproto.construct_empty_ok_res()
        elif op_word == libp2pdns.EXIT_REQ_OP_WORD:
            self._process_remove(identifier)
            return libp2pproto.construct_empty_ok_res()
        else:
            return libp2pproto.construct_unknown_res()

    def _service_connection(self, conn, addr):
        logger.debug("Connected by %s", addr)

        data_string = ""
        try:
            while True:
                data = conn.recv(MAX_MSG_LEN)
                if not data:
                    break
                try:
                    data_string = data_string + data.decode("utf-8")
                    req = P2PRequestPacket.parse(data_string)
                except ValueError as err:
                    if err.args[0] == libp2pproto.INCOMPLETE_PACKET_ERROR:
                        continue
                    conn.sendall(libp2pproto.construct_malformed_res().encode_bytes())
                    break
                res_pkt = self._process_req(req)
                conn.sendall(res_pkt.encode_bytes())
                break
        except OSError as err:
            logger.debug("Connection from %s dropped: %s", addr, err)
        finally:
            conn.close()

    def run(self):
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind(('', self.port))
        self.server_socket.listen()

        logger.info("P2P DNS Server listening on port:%d", self.port)

        while 1:
            try:
                conn, addr = self.server_socket.accept()
            except OSError:
                break
            self._service_connection(conn, addr)

    def shutdown(self):
        if self.server_socket is not None:
            self.server_socket.close()
            self.server_socket = None
        self.dbconn.close()


def get_args(argv=None):
    parser = argparse.ArgumentParser(description="Chord discovery server")
    parser.add_argument("--port", type=int, default=PORT, help="Port to listen on")
    parser.add_argument("--db", type=str, default=DB_NAME, help="Path of the sqlite registry")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = get_args()
    logging.basicConfig(level=args.log_level.upper(),
                        format='%(asctime)s - %(name)s - %(levelname)s -> %(message)s')
    p2pdns = P2PDns(args.port, args.db)

    def handler(signum, frame):
        logger.info('Signal handler called with signal %d', signum)
        p2pdns.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, handler)
    p2pdns.run()
