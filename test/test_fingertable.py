import random

import utils
from peer import Identifier
from libchord.fingertable import FingerTable


def _peer(position):
    return Identifier("peer%d" % position, "10.0.0.%d" % (position % 250), 7495, position)


def _distance(position, peer_id):
    return (peer_id.value() - position) % utils.RING_SIZE


def test_new_table_points_at_owner():
    owner = _peer(100)
    finger_table = FingerTable(utils.M_EXPONENT, owner)

    assert finger_table.size() == utils.M_EXPONENT
    assert all(entry == owner for entry in finger_table)
    assert finger_table.successor() == owner


def test_ring_position_of_index_wraps():
    finger_table = FingerTable(utils.M_EXPONENT, _peer(utils.RING_SIZE - 1))

    assert finger_table.ring_position_of_index(0) == 0
    assert finger_table.ring_position_of_index(3) == 7
    assert finger_table.ring_position_of_index(utils.M_EXPONENT - 1) == utils.RING_SIZE // 2 - 1


def test_update_with_successor_picks_closer_peers_only():
    owner = _peer(10)
    finger_table = FingerTable(utils.M_EXPONENT, owner)

    finger_table.update_with_successor(_peer(50))

    # targets 11..42 are reached by 50 first, 74 and up wrap back to 10
    for index in range(finger_table.size()):
        position = finger_table.ring_position_of_index(index)
        expected = 50 if utils.is_between(position, 10, 50, inclusive=True) else 10
        assert finger_table.get(index).value() == expected


def test_update_with_equal_candidate_is_noop():
    owner = _peer(10)
    finger_table = FingerTable(utils.M_EXPONENT, owner)
    finger_table.update_with_successor(_peer(50))
    before = list(finger_table)

    finger_table.update_with_successor(_peer(50))
    finger_table.update_with_successor(owner)

    assert list(finger_table) == before


def test_update_with_successor_never_moves_entries_away():
    rng = random.Random(3103)
    owner = _peer(4242)
    finger_table = FingerTable(utils.M_EXPONENT, owner)
    known = [owner]

    for _ in range(200):
        candidate = _peer(rng.randrange(utils.RING_SIZE))
        before = list(finger_table)
        finger_table.update_with_successor(candidate)
        known.append(candidate)

        for index, entry in enumerate(finger_table):
            position = finger_table.ring_position_of_index(index)
            assert _distance(position, entry) <= _distance(position, before[index])

    # after seeing every peer each entry is the true successor among them
    for index, entry in enumerate(finger_table):
        position = finger_table.ring_position_of_index(index)
        best = min(known, key=lambda peer_id: _distance(position, peer_id))
        assert entry == best


def test_candidate_on_target_position_wins():
    owner = _peer(10)
    finger_table = FingerTable(utils.M_EXPONENT, owner)
    finger_table.update_with_successor(_peer(30))
    finger_table.update_with_successor(_peer(26))

    assert finger_table.get(4).value() == 26
    finger_table.update_with_successor(_peer(27))
    assert finger_table.get(4).value() == 26


def test_set_overwrites_unconditionally():
    owner = _peer(10)
    finger_table = FingerTable(utils.M_EXPONENT, owner)
    finger_table.set(5, _peer(9))

    assert finger_table.get(5).value() == 9


def test_closest_preceding_peer():
    owner = _peer(10)
    finger_table = FingerTable(utils.M_EXPONENT, owner)
    for position in (20, 50, 300, 40000):
        finger_table.update_with_successor(_peer(position))

    assert finger_table.closest_preceding_peer(60).value() == 50
    assert finger_table.closest_preceding_peer(50).value() == 20
    assert finger_table.closest_preceding_peer(15) == owner
    assert finger_table.closest_preceding_peer(5).value() == 40000


def test_replace_peer():
    owner = _peer(10)
    finger_table = FingerTable(utils.M_EXPONENT, owner)
    finger_table.update_with_successor(_peer(50))
    finger_table.replace_peer(_peer(50), _peer(70))

    assert 50 not in [entry.value() for entry in finger_table]
    assert finger_table.successor().value() == 70
