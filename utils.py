import hashlib
import math

# PEERING CONSTANTS
M_EXPONENT = 16
RING_SIZE = 2 ** M_EXPONENT
HEX_WIDTH = int(math.ceil(M_EXPONENT / 4.0))

##
## Hashing
##
def consistent_hash(data):
    if isinstance(data, str):
        data = data.encode()
    hex_dig = hashlib.sha1(data).hexdigest()
    return int(hex_dig, 16) % RING_SIZE

def generate_peer_hash(hostname, port):
    return consistent_hash("%s:%d" % (hostname, int(port)))

def generate_file_id(content):
    return int_to_hex(consistent_hash(content))

##
## Ring arithmetic
##
def is_id_valid(value):
    return isinstance(value, int) and 0 <= value < RING_SIZE

def int_to_hex(value):
    if not is_id_valid(value):
        raise ValueError("%r is outside the ring [0, %d)" % (value, RING_SIZE))
    return "%0*x" % (HEX_WIDTH, value)

def hex_to_int(string):
    return int(string, 16)

def is_between(x, lo, hi, inclusive=False):
    """ is_between(x, lo, hi) -> bool

    True if walking clockwise from lo (exclusive) to hi passes through x.
    hi itself counts only when inclusive is set. lo == hi is the whole ring.
    """
    if inclusive and x == hi:
        return True
    if x == lo or x == hi:
        return False
    if lo < hi:
        return lo < x < hi
    # arc wraps past zero
    return x > lo or x < hi

##
## Wire helpers
##
def remove_empty_string_from_arr(arr):
    return list(filter(lambda x: x != '', arr))
