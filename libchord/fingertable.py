# fingertable.py
# --------------
# Shortcut pointers into the ring. Entry i approximates the
# successor of (owner + 2^i) mod 2^m.
import utils


class FingerTable(object):

    def __init__(self, size, owner):
        self.owner = owner
        self.peer_ids = [owner] * size

    def size(self):
        return len(self.peer_ids)

    def get(self, index):
        return self.peer_ids[index]

    def set(self, index, peer_id):
        self.peer_ids[index] = peer_id

    def successor(self):
        return self.peer_ids[0]

    def ring_position_of_index(self, index):
        return (self.owner.value() + 2 ** index) % utils.RING_SIZE

    def is_between(self, x, lo, hi, inclusive=True):
        return utils.is_between(x, lo, hi, inclusive=inclusive)

    def update_with_successor(self, candidate):
        """ Tighten every entry that candidate approximates better.

        candidate replaces entry i only when it sits on the arc from the
        target position (inclusive) up to the current entry (exclusive).
        """
        for index in range(self.size()):
            position = self.ring_position_of_index(index)
            current = self.peer_ids[index]
            if candidate == current or current.value() == position:
                continue
            if (candidate.value() == position
                    or utils.is_between(candidate.value(), position, current.value())):
                self.peer_ids[index] = candidate

    def replace_peer(self, departed, replacement):
        for index, peer_id in enumerate(self.peer_ids):
            if peer_id == departed:
                self.peer_ids[index] = replacement

    def closest_preceding_peer(self, position):
        for peer_id in reversed(self.peer_ids):
            if utils.is_between(peer_id.value(), self.owner.value(), position):
                return peer_id
        return self.owner

    def __iter__(self):
        return iter(list(self.peer_ids))

    def __str__(self):
        lines = ["%d: %s" % (index, peer_id) for index, peer_id in enumerate(self.peer_ids)]
        return "\n".join(lines)
