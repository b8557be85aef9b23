# p2pmain.py
# ------------
# The P2P main program. Starts the P2P server in a daemon thread,
# joins the ring, then hands over to the console
import argparse
import logging
import sys

import peer
from peer import Peer
from p2pserver import P2PServer, PEER_PORT
from p2pclient import P2PClient
from libchord.chord import Chord, JoinError, ACTIVE, STABILISATION_INTERVAL
from libdhash.dhash import Dhash, DATA_DIR
from libprotocol import libp2pdns, libp2pproto
from libprotocol.libp2pproto import TcpTransport

logger = logging.getLogger(__name__)


def get_args(argv=None):
    parser = argparse.ArgumentParser(description="Chord P2P peer")
    parser.add_argument("dns_host", type=str, help="Host of the discovery server")
    parser.add_argument("--dns-port", type=int, default=libp2pdns.DNS_PORT, help="Port of the discovery server")
    parser.add_argument("--host", type=str, default=None, help="Hostname other peers reach us at")
    parser.add_argument("--port", type=int, default=PEER_PORT, help="Port to listen on")
    parser.add_argument("--seed", type=str, default=None, help="Seed hashed into our ring id (default host:port)")
    parser.add_argument("--data-dir", type=str, default=DATA_DIR, help="Directory holding our files")
    parser.add_argument("--timeout", type=float, default=libp2pproto.REQUEST_TIMEOUT,
                        help="Seconds to wait on a peer before giving up")
    parser.add_argument("--retries", type=int, default=libp2pproto.REQUEST_RETRIES,
                        help="Extra attempts for a failed request")
    parser.add_argument("--stabilisation-interval", type=int, default=STABILISATION_INTERVAL,
                        help="Seconds between finger table refreshes, 0 disables them")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    return parser.parse_args(argv)


class P2PMain(object):

    def __init__(self, args):
        identifier = peer.local_identifier(args.port, hostname=args.host, seed=args.seed)
        transport = TcpTransport(timeout=args.timeout, retries=args.retries)

        self.peer = Peer(identifier)
        self.dhash = Dhash(self.peer, transport, args.data_dir)
        self.chord = Chord(self.peer, self.dhash, transport, args.dns_host, args.dns_port,
                           stabilisation_interval=args.stabilisation_interval)
        self.p2p_server = P2PServer(self.chord, args.port)
        self.p2p_client = P2PClient(self.chord)

    def run(self):
        print("My peer_id is: %d" % (self.peer.peer_id,))
        self.p2p_server.run()
        try:
            if not self.chord.join_network():
                logger.error("Join was abandoned, see the log above")
                return 1
            self.p2p_client.run()
        except JoinError as err:
            logger.error("Cannot join the network: %s", err)
            return 1
        finally:
            # console died without option 7
            if self.chord.state == ACTIVE:
                self.chord.leave_network()
            self.chord.stop_stabilisation()
            self.p2p_server.shutdown()
        return 0


if __name__ == "__main__":
    args = get_args()
    logging.basicConfig(level=args.log_level.upper(),
                        format='%(asctime)s - %(name)s - %(levelname)s -> %(message)s')
    sys.exit(P2PMain(args).run())
