# dhash.py
# ------------
# Local file store of a ring peer. Content lives in a flat
# directory, the file_id -> filename index in sqlite.
import logging
import os
import sqlite3

import utils
from libprotocol import libp2pproto
from libprotocol.libp2pproto import P2PTransportError

logger = logging.getLogger(__name__)

DATA_DIR     = './p2pvar/'
DB_FILENAME  = 'p2pdht.db'
SELECT_QUERY = "SELECT file_id, filename FROM p2pdht WHERE file_id=?"
SHARED_QUERY = "SELECT file_id FROM p2pdht WHERE filename=? AND file_id!=?"


class Dhash(object):

    def __init__(self, peer, transport, data_dir=DATA_DIR):
        self.peer = peer
        self.transport = transport
        self.data_dir = data_dir
        self.db_name = os.path.join(data_dir, DB_FILENAME)
        self._setup_db()

    def _setup_db(self):
        if not os.path.exists(self.data_dir):
            os.makedirs(self.data_dir)

        query = """
            CREATE TABLE IF NOT EXISTS p2pdht (file_id TEXT PRIMARY KEY, filename TEXT)
        """
        dbconn = sqlite3.connect(self.db_name)
        cursor = dbconn.cursor()
        cursor.execute(query)
        dbconn.commit()
        dbconn.close()

    def _file_path(self, filename):
        return os.path.join(self.data_dir, os.path.basename(filename))

    def store_file(self, file_id, filename, content):
        logger.info("Writing %s(id=%s, length=%d bytes) to %s", filename, file_id, len(content), self.data_dir)
        for (other_id,) in self._ids_sharing(filename, file_id):
            logger.warning("%s is already stored under id %s, its content is replaced by %s",
                           filename, other_id, file_id)
        with open(self._file_path(filename), "wb") as f:
            f.write(content)

        insert_query = """
            INSERT OR REPLACE INTO p2pdht (file_id, filename) VALUES (?, ?)
        """
        dbconn = sqlite3.connect(self.db_name)
        cursor = dbconn.cursor()
        cursor.execute(insert_query, (file_id, filename))
        dbconn.commit()
        dbconn.close()

    def remove_file(self, file_id):
        datum = self._get_row(file_id)
        if datum is None:
            logger.info("No file with id %s on %s, nothing to remove", file_id, self.peer.identifier.hostname)
            return False

        filename = datum[1]
        if self._ids_sharing(filename, file_id):
            logger.warning("Keeping content of %s, other ids still index it", filename)
        else:
            try:
                os.remove(self._file_path(filename))
            except FileNotFoundError:
                logger.warning("Content of %s was already gone from %s", filename, self.data_dir)
            except OSError as err:
                logger.warning("Unable to remove %s: %s", filename, err)
                return False

        delete_query = """
            DELETE FROM p2pdht WHERE file_id=?
        """
        dbconn = sqlite3.connect(self.db_name)
        cursor = dbconn.cursor()
        cursor.execute(delete_query, (file_id,))
        dbconn.commit()
        dbconn.close()
        logger.info("Removed file %s from %s", filename, self.peer.identifier.hostname)
        return True

    def read_file(self, file_id):
        datum = self._get_row(file_id)
        if datum is None:
            raise KeyError(file_id)
        with open(self._file_path(datum[1]), "rb") as f:
            return f.read()

    def has_file(self, file_id):
        return self._get_row(file_id) is not None

    # Returns (file_id, filename) pairs
    def get_local_files(self):
        select_query = """
            SELECT file_id, filename FROM p2pdht ORDER BY file_id
        """
        dbconn = sqlite3.connect(self.db_name)
        cursor = dbconn.cursor()
        cursor.execute(select_query)
        data = cursor.fetchall()
        dbconn.close()
        return data

    def _get_row(self, file_id):
        dbconn = sqlite3.connect(self.db_name)
        cursor = dbconn.cursor()
        cursor.execute(SELECT_QUERY, (file_id,))
        datum = cursor.fetchone()
        dbconn.close()
        return datum

    def _ids_sharing(self, filename, file_id):
        dbconn = sqlite3.connect(self.db_name)
        cursor = dbconn.cursor()
        cursor.execute(SHARED_QUERY, (filename, file_id))
        data = cursor.fetchall()
        dbconn.close()
        return data

    def select_files_owned_by(self, candidate_predecessor):
        """ Files whose id now routes to candidate_predecessor.

        That is every id <= the candidate, except when the candidate sits
        above this peer (it wrapped past zero): ids at or below this peer
        are still ours then.
        """
        own_id = self.peer.peer_id
        candidate_id = candidate_predecessor.value()

        selected = []
        for file_id, filename in self.get_local_files():
            value = utils.hex_to_int(file_id)
            if value > candidate_id:
                continue
            if candidate_id > own_id and value <= own_id:
                continue
            selected.append((file_id, filename))
        return selected

    def migrate_to(self, destination, selected_files):
        """ Move each selected file to destination, best effort.

        A file is only removed here once destination acknowledged it.
        Returns the ids that moved.
        """
        moved = []
        for file_id, filename in selected_files:
            logger.info("Moving file %s(%s) to %s", filename, file_id, destination)
            try:
                content = self.read_file(file_id)
                req_packet = libp2pproto.construct_move_file_req(self.peer.identifier, file_id, filename, content)
                res_pkt = self.transport.request(destination.ip_addr, destination.port, req_packet)
            except (OSError, KeyError, P2PTransportError) as err:
                logger.error("Unable to move %s(%s) to %s: %s", filename, file_id, destination, err)
                continue

            if len(res_pkt.data) < 1 or res_pkt.data[0] != file_id:
                logger.error("%s did not acknowledge %s(%s): %r", destination, filename, file_id, res_pkt.data)
                continue

            logger.info("File %s(%s) successfully moved to %s", filename, file_id, res_pkt.data[-1])
            self.remove_file(file_id)
            moved.append(file_id)
        return moved
