# chord.py
# ------------
# Ring maintenance for one peer: joining, finger table repair,
# inbound ring requests, ownership migration and leaving.
import logging
import os
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from prettytable import PrettyTable, HRuleStyle

import utils
from peer import Identifier
from libprotocol import libp2pproto, libp2pdns
from libprotocol.libp2pproto import P2PTransportError

logger = logging.getLogger(__name__)

STABILISATION_INTERVAL = 30

# Peer lifecycle
UNJOINED      = "UNJOINED"
BOOTSTRAPPING = "BOOTSTRAPPING"
STABILIZING   = "STABILIZING"
ACTIVE        = "ACTIVE"
LEFT          = "LEFT"


class JoinError(Exception):
    """ The peer cannot take part in the ring with its identifier. """


class Chord(object):

    def __init__(self, peer, dhash, transport, dns_ip_addr, dns_port=libp2pdns.DNS_PORT,
                 stabilisation_interval=STABILISATION_INTERVAL):
        self.peer = peer
        self.dhash = dhash
        self.transport = transport
        self.dns_ip_addr = dns_ip_addr
        self.dns_port = dns_port
        self.stabilisation_interval = stabilisation_interval
        self.state = UNJOINED
        self.lock = threading.RLock()
        self.scheduler = BackgroundScheduler()

    ##
    ## Accessors
    ##
    def get_identifier(self):
        return self.peer.identifier

    def get_successor(self):
        return self.peer.successor

    def get_predecessor(self):
        return self.peer.predecessor

    def get_finger_table(self):
        return self.peer.finger_table

    ##
    ## Joining
    ##
    def join_network(self):
        """ Register with the discovery server and link into the ring.

        Raises JoinError when the identifier is invalid or already taken.
        Returns False when a transport failure cut the join short; the
        peer is then left in whatever state it had reached.
        """
        me = self.peer.identifier
        if self.state != UNJOINED:
            raise JoinError("peer %d is %s, it can only join once" % (me.id, self.state))
        if not me.is_valid():
            logger.warning("Invalid ID %d", me.id)
            raise JoinError("identifier %d is outside the ring [0, %d)" % (me.id, utils.RING_SIZE))

        self.state = BOOTSTRAPPING
        try:
            accepted, random_peer = libp2pdns.send_dns_register(self.transport, self.dns_ip_addr, self.dns_port, me)
            if not accepted:
                logger.warning("A Peer with ID %d already exists in the network.", me.id)
                self.state = UNJOINED
                raise JoinError("a peer with id %d already exists in the network" % (me.id,))

            logger.info("Registered with discovery server, random peer is %s", random_peer)
            self.update_finger_table(random_peer)

            if random_peer == me:
                logger.info("We are the first peer to join the network")
            else:
                self.state = STABILIZING
                logger.info("There are other nodes in the network, contacting %s to find our successor",
                            random_peer.hostname)
                self._link_into_ring(random_peer)

            logger.info("Notifying discovery server %s that we have fully joined the network", self.dns_ip_addr)
            libp2pdns.send_dns_joined(self.transport, self.dns_ip_addr, self.dns_port, me)
        except P2PTransportError as err:
            logger.error("Unable to join the network: %s", err)
            # free our id so a restart can register again
            self._deregister()
            return False

        self.state = ACTIVE
        logger.info("After joining the network:\n%s", self.peer)
        self.start_stabilisation()
        return True

    def _link_into_ring(self, random_peer):
        me = self.peer.identifier

        successor = self._request_identifier(random_peer, libp2pproto.construct_find_successor_req(me, me.id))
        logger.info("Received successor %s from %s", successor, random_peer.hostname)
        self.peer.successor = successor
        self.update_finger_table(successor)

        # our successor's current predecessor becomes ours
        predecessor = self._request_identifier(successor, libp2pproto.construct_get_predecessor_req(me))
        logger.info("Received predecessor %s from %s", predecessor, successor.hostname)
        self.peer.predecessor = predecessor
        self.update_finger_table(predecessor)

        logger.info("Notifying our successor %s that we are its new predecessor", successor.hostname)
        self.transport.request(successor.ip_addr, successor.port,
                               libp2pproto.construct_predecessor_notification(me, me))

        logger.info("Notifying our predecessor %s that we are its new successor", predecessor.hostname)
        self.transport.request(predecessor.ip_addr, predecessor.port,
                               libp2pproto.construct_successor_notification(me, me))

        self.refresh_finger_table()

        self.transport.notify(successor.ip_addr, successor.port,
                              libp2pproto.construct_network_join_notification(me))

    def _request_identifier(self, target, req_packet):
        res_pkt = self.transport.request(target.ip_addr, target.port, req_packet)
        try:
            return Identifier.parse(res_pkt.data[0])
        except (IndexError, ValueError):
            raise P2PTransportError("malformed identifier reply from %s: %r" % (target, res_pkt.data),
                                    code=libp2pproto.MALFORMED_RES_CODE)

    ##
    ## Finger table
    ##
    def update_finger_table(self, new_peer):
        with self.lock:
            logger.info("Updating our finger table with peer: %s", new_peer)
            self.peer.finger_table.update_with_successor(new_peer)
            logger.debug("Our finger table after update:\n%s", self.peer.finger_table)

    def refresh_finger_table(self):
        """ Ask the network for the exact owner of every finger that our
        successor does not already cover. Returns how many were set.
        """
        with self.lock:
            me = self.peer.identifier
            successor = self.peer.successor
            finger_table = self.peer.finger_table
            refreshed = 0

            logger.info("Sending volley of queries to update our finger table...")
            for index in range(finger_table.size()):
                position = finger_table.ring_position_of_index(index)
                if finger_table.is_between(position, me.value(), successor.value()):
                    continue

                logger.debug("Requesting successor of finger table index %d, ringPosition=%d, from %s",
                             index, position, successor.hostname)
                try:
                    owner = self._request_identifier(successor,
                                                     libp2pproto.construct_find_successor_req(me, position))
                except P2PTransportError as err:
                    logger.error("Unable to send FindSuccessorRequest to %s: %s", successor.hostname, err)
                    continue
                finger_table.set(index, owner)
                refreshed += 1

            logger.info("Finished updating finger table:\n%s", finger_table)
            return refreshed

    def start_stabilisation(self):
        if not self.stabilisation_interval or self.scheduler.running:
            return
        self.scheduler.add_job(self._stabilisation, 'interval', seconds=self.stabilisation_interval,
                               max_instances=1)
        self.scheduler.start()

    def stop_stabilisation(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def _stabilisation(self):
        if self.state != ACTIVE or self.peer.is_alone():
            return
        logger.debug("---------------STABILISATION---------------")
        self.refresh_finger_table()

    ##
    ## Lookup
    ##
    def find_successor(self, position):
        me = self.peer.identifier
        successor = self.peer.successor

        if successor == me or position == me.value():
            return me
        if utils.is_between(position, me.value(), successor.value(), inclusive=True):
            return successor

        next_hop = self.peer.finger_table.closest_preceding_peer(position)
        if next_hop == me:
            next_hop = successor
        logger.debug("Forwarding lookup of %d to %s", position, next_hop)
        req_packet = libp2pproto.construct_find_successor_req(me, position)
        try:
            return self._request_identifier(next_hop, req_packet)
        except P2PTransportError as err:
            # a coded reply means the hop is alive
            if next_hop == successor or err.code is not None:
                raise
            logger.warning("Finger %s is unreachable, falling back to successor %s: %s", next_hop, successor, err)
            with self.lock:
                self.peer.finger_table.replace_peer(next_hop, successor)
        return self._request_identifier(successor, req_packet)

    ##
    ## Files
    ##
    def store_file(self, file_id, filename, content):
        with self.lock:
            self.dhash.store_file(file_id, filename, content)

    def remove_file(self, file_id):
        with self.lock:
            return self.dhash.remove_file(file_id)

    def move_files_to_new_predecessor(self, new_predecessor):
        with self.lock:
            selected = self.dhash.select_files_owned_by(new_predecessor)
            if not selected:
                logger.info("No files to move from %s to %s", self.peer.identifier.hostname, new_predecessor)
                return []
            return self.dhash.migrate_to(new_predecessor, selected)

    def upload_file(self, path):
        """ Store the file at path on the peer that owns its digest. """
        with open(path, "rb") as f:
            content = f.read()
        file_id = utils.generate_file_id(content)
        filename = os.path.basename(path)

        owner = self.find_successor(utils.hex_to_int(file_id))
        if owner == self.peer.identifier:
            self.store_file(file_id, filename, content)
        else:
            logger.info("Sending %s(%s) to its owner %s", filename, file_id, owner)
            self.transport.request(owner.ip_addr, owner.port,
                                   libp2pproto.construct_move_file_req(self.peer.identifier, file_id,
                                                                       filename, content))
        return file_id, owner

    ##
    ## Inbound requests
    ##
    def handle_find_successor(self, sender, position):
        logger.debug("%s asked for the successor of %d", sender.hostname, position)
        return self.find_successor(position)

    def handle_get_predecessor(self, sender):
        return self.peer.predecessor

    def handle_predecessor_notification(self, sender, new_predecessor):
        me = self.peer.identifier
        old_predecessor = self.peer.predecessor
        self.peer.predecessor = new_predecessor
        logger.info("Predecessor changed from %s to %s", old_predecessor, new_predecessor)

        if old_predecessor == sender and new_predecessor != sender and old_predecessor != me:
            # our predecessor left the ring, its arc is ours now
            with self.lock:
                self.peer.finger_table.replace_peer(sender, me)

        inserted = new_predecessor != me and (
            old_predecessor == me
            or utils.is_between(new_predecessor.value(), old_predecessor.value(), me.value()))
        if inserted:
            self.move_files_to_new_predecessor(new_predecessor)

    def handle_successor_notification(self, sender, new_successor):
        me = self.peer.identifier
        old_successor = self.peer.successor
        self.peer.successor = new_successor
        logger.info("Successor changed from %s to %s", old_successor, new_successor)

        if (old_successor != me and old_successor != new_successor
                and not utils.is_between(new_successor.value(), me.value(), old_successor.value())):
            # old successor left the ring
            with self.lock:
                self.peer.finger_table.replace_peer(old_successor, new_successor)
        self.update_finger_table(new_successor)

    def handle_move_file(self, sender, file_id, filename, content):
        if utils.generate_file_id(content) != file_id:
            logger.warning("Content of %s from %s does not hash to %s", filename, sender.hostname, file_id)
        self.store_file(file_id, filename, content)
        return file_id, filename, self.peer.identifier.hostname

    def handle_network_join(self, joiner):
        logger.info("%s has joined the network", joiner)

    def handle_network_exit(self, leaver):
        logger.info("%s has left the network", leaver)

    ##
    ## Leaving
    ##
    def leave_network(self):
        """ Hand our files to the successor, relink our neighbours to each
        other and deregister. Every step is best effort.
        """
        me = self.peer.identifier
        if self.state == LEFT:
            logger.info("Peer %d has already left the network", me.id)
            return

        self.stop_stabilisation()
        successor = self.peer.successor
        predecessor = self.peer.predecessor

        if self.peer.is_alone():
            remaining = self.dhash.get_local_files()
            if remaining:
                logger.warning("Last peer leaving, %d files stay on %s", len(remaining), me.hostname)
        else:
            with self.lock:
                files = self.dhash.get_local_files()
                moved = self.dhash.migrate_to(successor, files)
            if len(moved) < len(files):
                logger.warning("%d files could not be handed to %s and stay on %s",
                               len(files) - len(moved), successor, me.hostname)

            self._send_quietly(predecessor, libp2pproto.construct_successor_notification(me, successor))
            self._send_quietly(successor, libp2pproto.construct_predecessor_notification(me, predecessor))
            try:
                self.transport.notify(successor.ip_addr, successor.port,
                                      libp2pproto.construct_network_exit_notification(me))
            except P2PTransportError as err:
                logger.error("Unable to send NetworkExitNotification to %s: %s", successor.hostname, err)

        self._deregister()
        self.state = LEFT
        logger.info("Peer %d has left the network", me.id)

    def _deregister(self):
        try:
            libp2pdns.send_dns_remove_entry(self.transport, self.dns_ip_addr, self.dns_port, self.peer.identifier)
        except P2PTransportError as err:
            logger.error("Unable to send NetworkExitNotification to discovery server: %s", err)

    def _send_quietly(self, target, req_packet):
        try:
            self.transport.request(target.ip_addr, target.port, req_packet)
        except P2PTransportError as err:
            logger.error("Unable to send %s to %s: %s", req_packet.op_word, target.hostname, err)

    ##
    ## Console
    ##
    def print_id(self):
        self.peer.print_id()

    def print_successor(self):
        self.peer.print_successor()

    def print_predecessor(self):
        self.peer.print_predecessor()

    def print_finger_table(self):
        self.peer.print_finger_table()

    def print_files(self):
        tab = PrettyTable(["File Id", "Filename"])
        for file_id, filename in self.dhash.get_local_files():
            tab.add_row([file_id, filename])
        tab.hrules = HRuleStyle.ALL
        print("Files on %s:" % (self.peer.identifier.hostname,))
        print(tab)

    def __str__(self):
        return "%s\tstate: %s\n" % (self.peer, self.state)
