"""
Attacks on weak symmetric encryption

Breaks single-byte and repeating-key XOR, runs ECB and CBC over an injected
fixed-block cipher, detects ECB ciphertext, and recovers an unknown suffix from
an ECB encryption oracle one byte at a time.

All crypto functions take and return numpy arrays of uint8; convenience
functions are provided to convert to and from this format.

Tests live next to the code they cover; run them with `pytest weakcrypt.py`.
"""

from base64 import b64encode as base64_encode
from base64 import b64decode as base64_decode
from base64 import b16decode, b16encode

import enum
import logging
from collections import defaultdict, namedtuple
from functools import lru_cache, partial
from operator import itemgetter

import numpy as np
from scipy.spatial.distance import pdist
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad as pkcs7_reference_pad

import pytest


np.set_printoptions(formatter={'int': hex})

logger = logging.getLogger(__name__)


# # # Configuration # # #


BLOCKSIZE = 16

# repeating-key XOR keysizes tried by default, and how many leading blocks of
# each size are compared
KEYSIZES = range(2, 41)
KEYSIZE_NBLOCKS = 4

# largest blocksize the ECB attack will try
MAX_BLOCKSIZE = 2**8
# identical plaintext blocks fed to an oracle to expose ECB
ECB_CHECK_NBLOCKS = 3

# random bytes added on each side by EncryptionOracle
ORACLE_PAD_MIN = 5
ORACLE_PAD_MAX = 10

SECRET_SUFFIX_B64 = (
        b"Um9sbGluJyBpbiBteSA1LjAKV2l0aCBteSByYWctdG9wIGRvd2"
        b"4gc28gbXkgaGFpciBjYW4gYmxvdwpUaGUgZ2lybGllcyBvbiBz"
        b"dGFuZGJ5IHdhdmluZyBqdXN0IHRvIHNheSBoaQpEaWQgeW91IH"
        b"N0b3A/IE5vLCBJIGp1c3QgZHJvdmUgYnkK")


# # # Errors # # #


class Stage(enum.Enum):
    """The step of an analysis that raised an error."""
    DECODING = 'decoding'
    BREAKING = 'breaking'
    KEYSIZE = 'key-size estimation'
    PADDING = 'padding'
    CIPHER = 'block cipher'
    ATTACK = 'attack'


class CryptanalysisError(Exception):
    """Base class for errors raised by this module.

    `stage` tells which step failed; subclasses set a default.
    """
    stage = Stage.BREAKING

    def __init__(self, message, stage=None):
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage

    def __str__(self):
        return "[{}] {}".format(self.stage.value, self.message)


class MalformedInputError(CryptanalysisError, ValueError):
    """Input that can never be valid: bad hex/base64, misaligned ciphertext."""
    stage = Stage.DECODING


class PaddingError(MalformedInputError):
    stage = Stage.PADDING


class NoSolutionError(CryptanalysisError):
    """A breaker or estimator has no answer to give."""
    stage = Stage.BREAKING


class AttackError(CryptanalysisError):
    """The oracle does not behave the way the attack needs it to."""
    stage = Stage.ATTACK


def test_error_str_names_stage():
    err = NoSolutionError("nothing decodes", stage=Stage.KEYSIZE)
    assert str(err) == "[key-size estimation] nothing decodes"
    assert err.message == "nothing decodes"


def test_error_default_stages():
    assert PaddingError("x").stage is Stage.PADDING
    assert MalformedInputError("x").stage is Stage.DECODING
    assert AttackError("x").stage is Stage.ATTACK
    assert isinstance(PaddingError("x"), ValueError)


# # # Utilities # # #


hex_decode = partial(b16decode, casefold=True)


def base64_from_hex(hex_str):
    """Set 1 - Challenge 1"""
    return base64_encode(bytes_from_array(array_from_hex(hex_str)))


def array_from_hex(hex_str):
    """Raises MalformedInputError on odd-length or non-hex input."""
    try:
        data = hex_decode(hex_str)
    except ValueError as err:
        raise MalformedInputError("Invalid hex string: {}".format(err)) from err
    return np.frombuffer(data, dtype=np.uint8)

afh = array_from_hex


def hex_from_array(arr):
    return b16encode(bytes_from_array(arr)).decode('ascii').lower()

hfa = hex_from_array


def bytes_from_array(arr):
    return arr.tobytes()

bfa = bytes_from_array


def array_from_bytes(s):
    return np.frombuffer(s, dtype=np.uint8)

afb = array_from_bytes


def line_array_from_hex_file(path):
    """Returns a list of arrays, one per non-empty line."""
    lines = []
    with open(path) as fh:
        for line in fh:
            line = line.strip()
            if line:
                lines.append(array_from_hex(line))
    return lines


def array_from_base64(s):
    """Decode base64 text, ignoring line breaks.

    `=` padding is accepted; any other character outside the base64 alphabet
    raises MalformedInputError.
    """
    compact = s[:0].join(s.split())
    try:
        data = base64_decode(compact, validate=True)
    except ValueError as err:
        raise MalformedInputError("Invalid base64: {}".format(err)) from err
    return np.frombuffer(data, np.uint8)

afb64 = array_from_base64


def base64_from_array(arr):
    return base64_encode(bytes_from_array(arr))


def xor_bytes(d0, d1):
    assert d0.size == d1.size, "XOR operands differ in length"
    return d0 ^ d1


def hamming_distance(d0, d1):
    return int(np.unpackbits(xor_bytes(d0, d1)).sum())


def repeat_key(key, length):
    """`key` cycled out to `length` bytes."""
    assert key.size > 0, "Empty key"
    return np.resize(key, length)


# # # Tests for  Utilities # # #

def test_base64_from_hex():
    hex_data = b"49276d206b696c6c696e6720796f757220627261696e206c696b65206120706f69736f6e6f7573206d757368726f6f6d"
    base64_result = b"SSdtIGtpbGxpbmcgeW91ciBicmFpbiBsaWtlIGEgcG9pc29ub3VzIG11c2hyb29t"
    assert base64_from_hex(hex_data) == base64_result


def test_array_from_hex():
    hex_data = b"4927abCD"
    expected = np.array([0x49, 0x27, 0xab, 0xcd], dtype=np.uint8)
    result = array_from_hex(hex_data)
    assert np.all(result == expected)


@pytest.mark.parametrize('bad', [b"abc", b"zz", "4927abéd", b"49 27"])
def test_array_from_hex_rejects(bad):
    with pytest.raises(MalformedInputError):
        array_from_hex(bad)


def test_hex_from_array():
    data = np.array([0x49, 0x27, 0xab, 0x0d, 0x00], dtype=np.uint8)
    expected = "4927ab0d00"
    result = hex_from_array(data)
    assert result == expected


def test_bytes_from_array():
    data = np.array([104, 101, 108, 108, 111], dtype=np.uint8)
    expected = b'hello'
    assert bytes_from_array(data) == expected


def test_array_from_bytes():
    data = b'hello'
    expected = np.array([104, 101, 108, 108, 111], dtype=np.uint8)
    assert np.all(array_from_bytes(data) == expected)


def test_array_from_base64():
    assert bfa(afb64(b"Zm9vYmFy")) == b"foobar"
    assert bfa(afb64("Zm9vYmE=")) == b"fooba"
    assert bfa(afb64(b"Zm9v\nYg==\n")) == b"foob"
    assert bfa(afb64(b"")) == b""


def test_array_from_base64_rejects_bad_alphabet():
    with pytest.raises(MalformedInputError) as excinfo:
        array_from_base64(b"Zm9v*mFy")
    assert excinfo.value.stage is Stage.DECODING


def test_base64_from_array():
    assert base64_from_array(afb(b"fo")) == b"Zm8="


def test_line_array_from_hex_file(tmp_path):
    path = tmp_path / "lines.txt"
    path.write_text("0001\n\nff10\n")
    lines = line_array_from_hex_file(str(path))
    assert [bfa(line) for line in lines] == [b"\x00\x01", b"\xff\x10"]


def test_xor():
    """Set 1 - Challenge 2"""
    data = afh(b"1c0111001f010100061a024b53535009181c")
    key = afh(b"686974207468652062756c6c277320657965")
    expected = afh(b"746865206b696420646f6e277420706c6179")
    result = xor_bytes(data, key)
    assert np.all(expected == result)


def test_xor_unequal_lengths():
    with pytest.raises(AssertionError):
        xor_bytes(afb(b"ab"), afb(b"abc"))


def test_hamming_distance():
    s0 = b"this is a test"
    s1 = b"wokka wokka!!!"
    assert hamming_distance(afb(s0), afb(s1)) == 37


def test_repeat_key():
    assert bfa(repeat_key(afb(b"ICE"), 7)) == b"ICEICEI"
    assert repeat_key(afb(b"ICE"), 0).size == 0


# # # Frequency scoring and XOR breaking # # #


letters = map(ord, 'abcdefghijklmnopqrstuvwxyz ABCDEFGHIJKLMNOPQRSTUVWXYZ')
letter_probabilities = \
       [0.0651738, 0.0124248, 0.0217339, 0.0349835, 0.1041442, 0.0197881,
        0.0158610, 0.0492888, 0.0558094, 0.0009033, 0.0050529, 0.0331490,
        0.0202124, 0.0564513, 0.0596302, 0.0137645, 0.0008606, 0.0497563,
        0.0515760, 0.0729357, 0.0225134, 0.0082903, 0.0171272, 0.0013692,
        0.0145984, 0.0007836,
        0.1918182,
        0.0651738, 0.0124248, 0.0217339, 0.0349835, 0.1041442, 0.0197881,
        0.0158610, 0.0492888, 0.0558094, 0.0009033, 0.0050529, 0.0331490,
        0.0202124, 0.0564513, 0.0596302, 0.0137645, 0.0008606, 0.0497563,
        0.0515760, 0.0729357, 0.0225134, 0.0082903, 0.0171272, 0.0013692,
        0.0145984, 0.0007836]

probability_from_char = defaultdict(float, zip(letters, letter_probabilities))

# indexed by byte value
char_scores = np.array([probability_from_char[c] for c in range(256)])


ScoredCandidate = namedtuple('ScoredCandidate', ['score', 'key', 'text'])


def score_english(message):
    """How much `message` looks like English; higher is more likely.

    Letters (either case) and space add their frequency; every other byte adds
    nothing.  Raises UnicodeDecodeError if `message` is not UTF-8 text at all,
    so "not text" can't be mistaken for a low score.
    """
    bytes_from_array(message).decode('utf-8')
    return float(char_scores[message].sum())


def break_single_byte_xor(ciphertext):
    """Set 1 - Challenge 3

    Discover the single-byte key.

    Every key whose output decodes as UTF-8 is scored; the best one is
    returned as a ScoredCandidate(score, key, text).  Ties go to the smaller
    key.  Raises NoSolutionError when no key gives valid text.
    """
    data = ciphertext.reshape(1, -1)
    keys = np.arange(256, dtype=np.uint8).reshape(-1, 1)
    messages = data ^ keys
    scored = []
    for key, message in enumerate(messages):
        try:
            scored.append((score_english(message), key))
        except UnicodeDecodeError:
            continue
    if not scored:
        raise NoSolutionError(
            "No single-byte key turns {} bytes into text".format(ciphertext.size))
    score, key = max(scored, key=itemgetter(0))
    text = bytes_from_array(messages[key]).decode('utf-8')
    return ScoredCandidate(score, key, text)


def decrypt_single_byte_xor(ciphertext):
    key = break_single_byte_xor(ciphertext).key
    return ciphertext ^ np.uint8(key)


def detect_single_byte_xor(ciphertext_lines):
    """Set 1 - Challenge 4

    Find the one line encrypted with single-byte XOR and return its plaintext.
    Lines that never decode to text are skipped.
    """
    broken = []
    for line in ciphertext_lines:
        try:
            broken.append((break_single_byte_xor(line), line))
        except NoSolutionError:
            continue
    if not broken:
        raise NoSolutionError("No line decrypts to text")
    best, line = max(broken, key=lambda candidate_line: candidate_line[0].score)
    return line ^ np.uint8(best.key)


def encrypt_repeating_key_xor(data, key):
    """Set 1 - Challenge 5"""
    return xor_bytes(data, repeat_key(key, data.size))


def normalized_hamming(data, keysize, nblocks=KEYSIZE_NBLOCKS):
    """Hamming distance between the first `nblocks` blocks of `data`, summed
    over every ordered pair of blocks and divided by keysize."""
    assert data.size >= nblocks * keysize, "Not enough data for keysize"
    blocks = data[:nblocks * keysize].reshape(nblocks, keysize)
    bits = np.unpackbits(blocks, axis=1).astype(bool)
    # pdist yields one fraction of differing bits per unordered pair
    pair_distances = np.rint(pdist(bits, 'hamming') * bits.shape[1])
    return 2 * pair_distances.sum() / keysize


def find_likely_keysizes(data, keysizes=KEYSIZES, nblocks=KEYSIZE_NBLOCKS):
    """Returns a sorted list of (keysize, score), sorted by score

    Keysizes too big to fill `nblocks` blocks of `data` are left out.  Equal
    scores keep the order of `keysizes`.
    """
    size_and_score = [(keysize, normalized_hamming(data, keysize, nblocks))
                      for keysize in keysizes
                      if nblocks * keysize <= data.size]
    return sorted(size_and_score, key=lambda ss: ss[1])


def find_keysize(data, keysizes=KEYSIZES, nblocks=KEYSIZE_NBLOCKS):
    """On English text this is often a multiple of the real key length."""
    likely = find_likely_keysizes(data, keysizes=keysizes, nblocks=nblocks)
    if not likely:
        raise NoSolutionError(
            "{} bytes is too short to test any keysize".format(data.size),
            stage=Stage.KEYSIZE)
    keysize, distance = likely[0]
    logger.debug("likely keysize %d (normalized distance %.3f)",
                 keysize, distance)
    return keysize


def break_repeating_key_xor(data, keysize):
    """Recover a repeating XOR key of known size.

    Column i holds every byte encrypted with key byte i, so each column is a
    single-byte XOR problem of its own.
    """
    key = []
    for i in range(keysize):
        try:
            key.append(break_single_byte_xor(data[i::keysize]).key)
        except NoSolutionError as err:
            raise NoSolutionError("Key byte {} of {}: {}".format(
                i, keysize, err.message)) from err
    return np.array(key, dtype=np.uint8)


def decrypt_repeating_key_xor(data, keysize=None):
    """Set 1 - Challenge 6"""
    if keysize is None:
        keysize = find_keysize(data)
    key = break_repeating_key_xor(data, keysize)
    return encrypt_repeating_key_xor(data, key)


# # # Tests for XOR breaking # # #


ENGLISH_SAMPLE = (
    b"It was the best of times, it was the worst of times, it was the age "
    b"of wisdom, it was the age of foolishness, it was the epoch of belief, "
    b"it was the epoch of incredulity, it was the season of light, it was "
    b"the season of darkness, it was the spring of hope, it was the winter "
    b"of despair, we had everything before us, we had nothing before us, we "
    b"were all going direct to heaven, we were all going direct the other "
    b"way - in short, the period was so far like the present period, that "
    b"some of its noisiest authorities insisted on its being received, for "
    b"good or for evil, in the superlative degree of comparison only.")


def test_score_english():
    assert score_english(afb(b"hello there")) > score_english(afb(b"qzx jv"))
    assert score_english(afb(b"#%&!*")) == 0.0
    assert score_english(afb(b"HELLO")) == score_english(afb(b"hello"))


def test_score_english_not_text():
    with pytest.raises(UnicodeDecodeError):
        score_english(afb(b"\xff\xfe"))


def test_decrypt_single_byte_xor():
    hex_data = b'1b37373331363f78151b7f2b783431333d78397828372d363c78373e783a393b3736'
    plaintext = bfa(decrypt_single_byte_xor(afh(hex_data)))
    assert plaintext == b"Cooking MC's like a pound of bacon"


def test_break_single_byte_xor():
    hex_data = b'1b37373331363f78151b7f2b783431333d78397828372d363c78373e783a393b3736'
    result = break_single_byte_xor(afh(hex_data))
    assert result.key == ord('X')
    assert result.text == "Cooking MC's like a pound of bacon"
    assert result.score > 0


def test_break_single_byte_xor_tie_goes_to_smallest_key():
    result = break_single_byte_xor(np.array([], dtype=np.uint8))
    assert result == ScoredCandidate(0.0, 0, "")


def test_break_single_byte_xor_binary():
    # every key leaves either a stray continuation byte or a truncated
    # multi-byte sequence
    with pytest.raises(NoSolutionError):
        break_single_byte_xor(afb(b"\x00\x80"))


def test_break_single_byte_xor_skips_undecodable_keys():
    # key 0 leaves a truncated multi-byte sequence; key 0x80 gives "a\x00"
    ciphertext = afb(b"\xe1\x80")
    result = break_single_byte_xor(ciphertext)
    assert result.key != 0
    assert result.text == bfa(ciphertext ^ np.uint8(result.key)).decode('utf-8')
    assert result.score == score_english(ciphertext ^ np.uint8(result.key))


def test_detect_single_byte_xor():
    rng = np.random.default_rng(4)
    message = b"Now that the party is jumping\n"
    lines = [afb(rng.bytes(len(message))) for _ in range(20)]
    lines.insert(7, afb(message) ^ np.uint8(0x35))
    lines.append(afb(b"\x00\x80"))
    assert bfa(detect_single_byte_xor(lines)) == message


def test_detect_single_byte_xor_nothing_decodes():
    with pytest.raises(NoSolutionError):
        detect_single_byte_xor([afb(b"\x00\x80"), afb(b"\x80\x00")])


def test_encrypt_repeating_key_xor():
    test_data = afb(b"Burning 'em, if you ain't quick and nimble\nI go crazy when I hear a cymbal")
    key = afb(b"ICE")
    expected = "0b3637272a2b2e63622c2e69692a23693a2a3c6324202d623d63343c2a26226324272765272a282b2f20430a652e2c652a3124333a653e2b2027630c692b20283165286326302e27282f"
    assert hex_from_array(encrypt_repeating_key_xor(test_data, key)) == expected


@pytest.mark.parametrize('key', [b"ICE", b"HELLO", b"YELLOW SUBMARINE",
                                 b"Terminator X: Bring the noise"])
def test_find_keysize_periodic(key):
    # a constant plaintext makes the ciphertext repeat with the key period
    ciphertext = encrypt_repeating_key_xor(afb(b" " * 200), afb(key))
    assert find_keysize(ciphertext) == len(key)


def test_find_likely_keysizes_skips_short():
    ciphertext = encrypt_repeating_key_xor(afb(b" " * 20), afb(b"ICE"))
    sizes = [keysize for keysize, _ in find_likely_keysizes(ciphertext)]
    assert sizes[0] == 3
    assert sorted(sizes) == [2, 3, 4, 5]


def test_find_keysize_too_short():
    with pytest.raises(NoSolutionError) as excinfo:
        find_keysize(afb(b"1234567"))
    assert excinfo.value.stage is Stage.KEYSIZE


def test_normalized_hamming():
    data = afb(b"this is a testwokka wokka!!!this is a testwokka wokka!!!")
    # 4 of the 6 block pairs differ by 37 bits, both ways round
    assert normalized_hamming(data, 14) == 2 * 4 * 37 / 14


def test_break_repeating_key_xor():
    key = afb(b"ICE")
    ciphertext = encrypt_repeating_key_xor(afb(ENGLISH_SAMPLE), key)
    assert bfa(break_repeating_key_xor(ciphertext, 3)) == b"ICE"
    plaintext = decrypt_repeating_key_xor(ciphertext, keysize=3)
    assert bfa(plaintext) == ENGLISH_SAMPLE


def test_decrypt_repeating_key_xor_estimates_keysize():
    plaintext = afb(b" " * 200)
    ciphertext = encrypt_repeating_key_xor(plaintext, afb(b"HELLO"))
    assert np.all(decrypt_repeating_key_xor(ciphertext) == plaintext)


def test_find_keysize_english_hits_key_period():
    # on English the estimate is often a multiple of the key length, and now
    # and then unrelated to it
    plaintext = afb(ENGLISH_SAMPLE * 4)
    hits = 0
    for keysize in KEYSIZES:
        key = random_key(np.random.default_rng(keysize), keysize)
        ciphertext = encrypt_repeating_key_xor(plaintext, key)
        hits += find_keysize(ciphertext) % keysize == 0
    assert hits >= 0.8 * len(KEYSIZES)


def test_decrypt_repeating_key_xor_english_without_keysize():
    plaintext = afb(ENGLISH_SAMPLE * 4)
    recovered = 0
    for keysize in KEYSIZES:
        key = random_key(np.random.default_rng(keysize), keysize)
        ciphertext = encrypt_repeating_key_xor(plaintext, key)
        try:
            recovered += np.array_equal(decrypt_repeating_key_xor(ciphertext),
                                        plaintext)
        except NoSolutionError:
            pass
    assert recovered >= 0.8 * len(KEYSIZES)


def test_decrypt_repeating_key_xor_english_short_key():
    plaintext = afb(ENGLISH_SAMPLE * 4)
    ciphertext = encrypt_repeating_key_xor(plaintext, afb(b"ICE"))
    assert find_keysize(ciphertext) % 3 == 0
    assert bfa(decrypt_repeating_key_xor(ciphertext)) == ENGLISH_SAMPLE * 4


def test_break_repeating_key_xor_propagates_column_failure():
    with pytest.raises(NoSolutionError) as excinfo:
        break_repeating_key_xor(afb(b"\x00\x00\x80\x80"), 2)
    assert "Key byte 0 of 2" in str(excinfo.value)


# # # Padding # # #


def pad(data, blocksize=BLOCKSIZE):
    """Set 2 - Challenge 9

    Pad an array to the next multiple of `blocksize` with a constant value:
    the number of bytes added.  Padding is always added; data that already
    fills its last block gets a whole block of padding.
    """
    assert 0 < blocksize < 256, "blocksize must fit in one pad byte"
    pad_len = blocksize - data.size % blocksize
    return np.pad(data, (0, pad_len), mode='constant',
                  constant_values=pad_len)


def unpad(data):
    """Strip as many trailing bytes as the last byte says.

    The stripped bytes are not checked against the count.
    """
    if data.size == 0:
        return data.copy()
    pad_len = int(data[-1])
    if pad_len > data.size:
        raise PaddingError("Pad length {} exceeds {} bytes of data".format(
            pad_len, data.size))
    return data[:data.size - pad_len].copy()


def test_pad():
    data = afb(b"YELLOW SUBMARINE")
    assert bfa(pad(data, 20)) == b"YELLOW SUBMARINE\x04\x04\x04\x04"
    assert bfa(pad(data, 12)) == b"YELLOW SUBMARINE" + b"\x08" * 8
    assert bfa(pad(data, 16)) == b"YELLOW SUBMARINE" + b"\x10" * 16

    data = afb(b"BLUE SUBMARINE")
    assert bfa(pad(data, 15)) == b"BLUE SUBMARINE\x01"


@pytest.mark.parametrize('size', [0, 1, 15, 16, 17, 33])
@pytest.mark.parametrize('blocksize', [1, 8, 16])
def test_pad_round_trip(size, blocksize):
    data = np.arange(size, dtype=np.uint8)
    padded = pad(data, blocksize)
    assert padded.size % blocksize == 0
    assert padded.size > data.size
    assert np.all(unpad(padded) == data)


def test_pad_bad_blocksize():
    with pytest.raises(AssertionError):
        pad(afb(b"data"), 0)
    with pytest.raises(AssertionError):
        pad(afb(b"data"), 256)


def test_unpad():
    assert bfa(unpad(afb(b"ICE ICE BABY\x04\x04\x04\x04"))) == b"ICE ICE BABY"
    assert unpad(np.array([], dtype=np.uint8)).size == 0


def test_unpad_does_not_validate():
    assert bfa(unpad(afb(b"ICE ICE BABY\x01\x02\x03\x04"))) == b"ICE ICE BABY"


def test_unpad_too_long():
    with pytest.raises(PaddingError):
        unpad(afb(b"ICE\x05"))


# # # Block ciphers and modes # # #


class BlockCipher:
    """A keyed permutation of `blocksize`-byte blocks.

    Subclasses supply `encrypt_block` and `decrypt_block`; the mode functions
    below only ever hand them single blocks of exactly `blocksize` bytes.
    """
    blocksize = BLOCKSIZE
    keysize = BLOCKSIZE

    def check_block(self, key, block):
        assert block.size == self.blocksize, \
            "Block is {} bytes, expected {}".format(block.size, self.blocksize)
        assert key.size == self.keysize, \
            "Key is {} bytes, expected {}".format(key.size, self.keysize)

    def encrypt_block(self, key, block):
        raise NotImplementedError

    def decrypt_block(self, key, block):
        raise NotImplementedError


@lru_cache(maxsize=128)
def _aes_for_key(key):
    return AES.new(key, AES.MODE_ECB)


class AESBlockCipher(BlockCipher):
    """AES-128 on one block at a time, courtesy of pycryptodome."""
    blocksize = 16
    keysize = 16

    def encrypt_block(self, key, block):
        self.check_block(key, block)
        aes = _aes_for_key(bytes_from_array(key))
        return array_from_bytes(aes.encrypt(bytes_from_array(block)))

    def decrypt_block(self, key, block):
        self.check_block(key, block)
        aes = _aes_for_key(bytes_from_array(key))
        return array_from_bytes(aes.decrypt(bytes_from_array(block)))


AES128 = AESBlockCipher()


def _check_aligned(ciphertext, blocksize):
    if ciphertext.size % blocksize != 0:
        raise MalformedInputError(
            "Ciphertext of {} bytes is not a whole number of {}-byte "
            "blocks".format(ciphertext.size, blocksize), stage=Stage.CIPHER)


def _map_blocks(block_fn, key, data, blocksize):
    """Apply a raw block operation to every block of block-aligned `data`."""
    assert data.size % blocksize == 0, "Raw block input must be block aligned"
    blocks = [block_fn(key, block) for block in data.reshape(-1, blocksize)]
    return np.array(blocks, dtype=np.uint8).reshape(-1)


def encrypt_ecb(plaintext, key, block_cipher=AES128):
    """Set 2 - Challenge 10"""
    blocksize = block_cipher.blocksize
    return _map_blocks(block_cipher.encrypt_block, key,
                       pad(plaintext, blocksize), blocksize)


def decrypt_ecb(ciphertext, key, block_cipher=AES128):
    """Set 1 - Challenge 7"""
    blocksize = block_cipher.blocksize
    _check_aligned(ciphertext, blocksize)
    return unpad(_map_blocks(block_cipher.decrypt_block, key, ciphertext,
                             blocksize))


def encrypt_cbc(plaintext, key, iv, block_cipher=AES128):
    """Set 2 - Challenge 10"""
    blocksize = block_cipher.blocksize
    assert iv.size == blocksize, "IV must be exactly one block"
    plain = pad(plaintext, blocksize).reshape(-1, blocksize)
    cipher = np.empty_like(plain)
    previous = iv
    for i, block in enumerate(plain):
        cipher[i] = block_cipher.encrypt_block(key, block ^ previous)
        previous = cipher[i]
    return cipher.reshape(-1)


def decrypt_cbc(ciphertext, key, iv, block_cipher=AES128):
    """Set 2 - Challenge 10

    Vectorized.
    """
    blocksize = block_cipher.blocksize
    _check_aligned(ciphertext, blocksize)
    assert iv.size == blocksize, "IV must be exactly one block"

    # decrypt
    plain = _map_blocks(block_cipher.decrypt_block, key, ciphertext,
                        blocksize)

    # XOR plaintext blocks with previous ciphertext blocks
    # (iv for 0th block)
    plain = plain ^ np.hstack((iv, ciphertext))[:plain.size]

    return unpad(plain)


# # # Tests for block ciphers and modes # # #


class _RotatingXorCipher(BlockCipher):
    """Toy 8-byte block permutation: XOR with the key, then rotate."""
    blocksize = 8
    keysize = 8

    def encrypt_block(self, key, block):
        self.check_block(key, block)
        return np.roll(block ^ key, 1)

    def decrypt_block(self, key, block):
        self.check_block(key, block)
        return np.roll(block, -1) ^ key


def test_aes_block_cipher_rejects_short_block():
    with pytest.raises(AssertionError):
        AES128.encrypt_block(afb(b"YELLOW SUBMARINE"), afb(b"too short"))


def test_encrypt_ecb_matches_pycryptodome():
    key = b'YELLOW SUBMARINE'
    plain = b"I was raised by a cup of coffee!"
    expected = AES.new(key, AES.MODE_ECB).encrypt(
        pkcs7_reference_pad(plain, 16))
    assert bfa(encrypt_ecb(afb(plain), afb(key))) == expected


def test_encrypt_cbc_matches_pycryptodome():
    key = b'YELLOW SUBMARINE'
    iv = bytes(range(16))
    plain = b"MORE PYTHONS, AND A FEW MORE TO FILL THE BLOCKS"
    expected = AES.new(key, AES.MODE_CBC, iv=iv).encrypt(
        pkcs7_reference_pad(plain, 16))
    assert bfa(encrypt_cbc(afb(plain), afb(key), afb(iv))) == expected


def test_decrypt_ecb():
    """Set 1 - Challenge 7"""
    key = b'YELLOW SUBMARINE'
    plain = b"I'm back and I'm ringin' the bell \nA rockin' on the mike"
    ciphertext = AES.new(key, AES.MODE_ECB).encrypt(
        pkcs7_reference_pad(plain, 16))
    assert bfa(decrypt_ecb(afb(ciphertext), afb(key))) == plain


@pytest.mark.parametrize('plain', [b"", b"MORE PYTHONS", b"YELLOW SUBMARINE",
                                   b"I was raised by a cup of coffee!!!"])
def test_aes_ecb_round_trip(plain):
    key = afb(b'YELLOW SUBMARINE')
    ciphertext = encrypt_ecb(afb(plain), key)
    assert ciphertext.size % 16 == 0
    assert bfa(decrypt_ecb(ciphertext, key)) == plain


@pytest.mark.parametrize('plain', [b"", b"MORE PYTHONS", b"YELLOW SUBMARINE",
                                   b"I was raised by a cup of coffee!!!"])
def test_aes_cbc_round_trip(plain):
    key = afb(b"YELLOW SUBMARINE")
    iv = np.zeros(16, dtype=np.uint8)
    ciphertext = encrypt_cbc(afb(plain), key, iv)
    assert bfa(decrypt_cbc(ciphertext, key, iv)) == plain


def test_cbc_hides_repeated_blocks():
    key = afb(b"YELLOW SUBMARINE")
    iv = np.zeros(16, dtype=np.uint8)
    ciphertext = encrypt_cbc(np.zeros(48, dtype=np.uint8), key, iv)
    blocks = ciphertext.reshape(-1, 16)
    assert not np.all(blocks[0] == blocks[1])


def test_modes_with_other_block_cipher():
    block_cipher = _RotatingXorCipher()
    key = afb(b"8bytekey")
    iv = afb(b"initvect")
    plain = afb(b"Any keyed permutation will do")
    ciphertext = encrypt_ecb(plain, key, block_cipher=block_cipher)
    assert ciphertext.size == 32
    assert np.all(decrypt_ecb(ciphertext, key, block_cipher=block_cipher)
                  == plain)
    ciphertext = encrypt_cbc(plain, key, iv, block_cipher=block_cipher)
    assert np.all(decrypt_cbc(ciphertext, key, iv, block_cipher=block_cipher)
                  == plain)


def test_decrypt_misaligned():
    key = afb(b"YELLOW SUBMARINE")
    with pytest.raises(MalformedInputError) as excinfo:
        decrypt_ecb(np.zeros(17, dtype=np.uint8), key)
    assert excinfo.value.stage is Stage.CIPHER
    with pytest.raises(MalformedInputError):
        decrypt_cbc(np.zeros(31, dtype=np.uint8), key,
                    np.zeros(16, dtype=np.uint8))


def test_cbc_bad_iv():
    key = afb(b"YELLOW SUBMARINE")
    with pytest.raises(AssertionError):
        encrypt_cbc(afb(b"data"), key, np.zeros(8, dtype=np.uint8))


# # # Mode detection and oracles # # #


class CipherMode(enum.Enum):
    ECB = 'ECB'
    CBC = 'CBC'


def detect_ecb(ciphertext, blocksize=BLOCKSIZE):
    """Set 1 - Challenge 8

    True if any `blocksize` block of `ciphertext` occurs twice.
    """
    _check_aligned(ciphertext, blocksize)
    seen = set()
    for block in ciphertext.reshape(-1, blocksize):
        block = block.tobytes()
        if block in seen:
            return True
        seen.add(block)
    return False


def detect_encryption_mode(ciphertext, blocksize=BLOCKSIZE):
    """Set 2 - Challenge 11

    Only meaningful when the plaintext repeats a block-aligned block, e.g.
    the output of an oracle fed a few blocks' worth of one byte.
    """
    if detect_ecb(ciphertext, blocksize):
        return CipherMode.ECB
    else:
        return CipherMode.CBC


def detect_ecb_line(data, blocksize=BLOCKSIZE):
    """Set 1 - Challenge 8

    Returns (index, repeats) for the row with the most repeated blocks.
    """
    row_scores = []
    for i, row in enumerate(data):
        if row.size == 0:
            continue
        _check_aligned(row, blocksize)
        counts = np.unique(row.reshape(-1, blocksize), axis=0,
                           return_counts=True)[1]
        row_scores.append((i, int(counts.max())))
    if not row_scores:
        raise NoSolutionError("No non-empty rows among {}".format(len(data)))
    return max(row_scores, key=lambda index_count: index_count[1])


def random_key(rng, size=BLOCKSIZE):
    return array_from_bytes(rng.bytes(size))


OracleOutput = namedtuple('OracleOutput', ['mode', 'ciphertext'])


class EncryptionOracle:
    """Set 2 - Challenge 11

    Encrypt data using a fresh random key, with 5-10 random bytes on each
    side, in ECB or CBC mode (randomly).  Calls return OracleOutput(mode,
    ciphertext) so tests can check a guess against the truth.

    For testing, you can force the mode with force_mode=CipherMode.ECB or
    force_mode=CipherMode.CBC.
    """

    def __init__(self, seed=None, block_cipher=AES128, force_mode=None):
        self.rng = np.random.default_rng(seed)
        self.block_cipher = block_cipher
        self.force_mode = force_mode

    def __call__(self, plaintext):
        left_pad, right_pad = self.rng.integers(
            ORACLE_PAD_MIN, ORACLE_PAD_MAX + 1, 2)
        padded = np.hstack((random_key(self.rng, int(left_pad)),
                            plaintext,
                            random_key(self.rng, int(right_pad))))

        key = random_key(self.rng, self.block_cipher.keysize)

        if self.force_mode is not None:
            mode = self.force_mode
        elif self.rng.integers(2):
            mode = CipherMode.CBC
        else:
            mode = CipherMode.ECB

        if mode is CipherMode.ECB:
            cipher = encrypt_ecb(padded, key, block_cipher=self.block_cipher)
        elif mode is CipherMode.CBC:
            iv = random_key(self.rng, self.block_cipher.blocksize)
            cipher = encrypt_cbc(padded, key, iv,
                                 block_cipher=self.block_cipher)
        else:
            assert False, 'Unreachable state'

        return OracleOutput(mode, cipher)


class SuffixOracle:
    """Set 2 - Challenge 12

    Encrypt data using a consistent random key.

    AES-128-ECB(plaintext || unknown-plaintext, random-key)

    Parameters
    ----------
    suffix : array of uint8, optional
        The "unknown plaintext".  Defaults to the decoded SECRET_SUFFIX_B64.
    key : array of uint8, optional
        Drawn from a generator seeded with `seed` if not given.
    seed : int, optional
    block_cipher : BlockCipher
    """

    def __init__(self, suffix=None, key=None, seed=None, block_cipher=AES128):
        rng = np.random.default_rng(seed)
        if suffix is None:
            suffix = array_from_base64(SECRET_SUFFIX_B64)
        if key is None:
            key = random_key(rng, block_cipher.keysize)
        self._suffix = suffix
        self._key = key
        self.block_cipher = block_cipher

    def __call__(self, plaintext):
        cat_text = np.hstack((plaintext, self._suffix))
        return encrypt_ecb(cat_text, self._key,
                           block_cipher=self.block_cipher)


def test_detect_ecb():
    key = afb(b"YELLOW SUBMARINE")
    repeated = encrypt_ecb(afb(b"YELLOW SUBMARINE" * 2 + b"tail"), key)
    assert detect_ecb(repeated)
    distinct = encrypt_ecb(afb(b"I was raised by a cup of coffee!"), key)
    assert not detect_ecb(distinct)


def test_detect_ecb_duplicate_anywhere():
    rng = np.random.default_rng(8)
    blocks = afb(rng.bytes(80)).reshape(5, 16)
    assert not detect_ecb(blocks.reshape(-1))
    blocks = np.vstack((blocks, blocks[1]))
    assert detect_ecb(blocks.reshape(-1))


def test_detect_ecb_misaligned():
    with pytest.raises(MalformedInputError):
        detect_ecb(np.zeros(20, dtype=np.uint8))


def test_detect_ecb_line():
    rng = np.random.default_rng(11)
    rows = [afb(rng.bytes(64)) for _ in range(5)]
    block = afb(rng.bytes(16))
    rows.insert(3, np.hstack((block, afb(rng.bytes(16)), block, block)))
    assert detect_ecb_line(rows) == (3, 3)


@pytest.mark.parametrize("rows", [[], [np.array([], dtype=np.uint8)] * 2])
def test_detect_ecb_line_no_rows(rows):
    with pytest.raises(NoSolutionError):
        detect_ecb_line(rows)


def test_encryption_oracle():
    plaintext = afb(b"I was raised by a cup of coffee")
    blocksize = 16
    oracle = EncryptionOracle(seed=0)
    for _ in range(10):
        mode, ciphertext = oracle(plaintext)
        assert mode in (CipherMode.ECB, CipherMode.CBC)
        assert ciphertext.size % blocksize == 0
        min_size = plaintext.size + 2 * ORACLE_PAD_MIN
        max_size = plaintext.size + 2 * ORACLE_PAD_MAX + blocksize
        assert min_size < ciphertext.size <= max_size


def test_encryption_oracle_seeded():
    plaintext = afb(b"I was raised by a cup of coffee")
    first = EncryptionOracle(seed=5)(plaintext)
    second = EncryptionOracle(seed=5)(plaintext)
    assert first.mode == second.mode
    assert np.all(first.ciphertext == second.ciphertext)


@pytest.mark.parametrize('seed', range(20))
def test_detect_encryption_mode(seed):
    oracle = EncryptionOracle(seed=seed)
    output = oracle(np.zeros(4 * BLOCKSIZE, dtype=np.uint8))
    assert detect_encryption_mode(output.ciphertext) == output.mode


@pytest.mark.parametrize('mode', [CipherMode.ECB, CipherMode.CBC])
def test_detect_encryption_mode_forced(mode):
    oracle = EncryptionOracle(seed=1, force_mode=mode)
    for _ in range(10):
        output = oracle(np.zeros(4 * BLOCKSIZE, dtype=np.uint8))
        assert output.mode is mode
        assert detect_encryption_mode(output.ciphertext) is mode


def test_suffix_oracle():
    plaintext = afb(b"I was raised by a cup of coffee")
    oracle = SuffixOracle(seed=2)
    ciphertext = oracle(plaintext)
    unknown_text_size = 138
    min_size = plaintext.size + unknown_text_size
    max_size = min_size + BLOCKSIZE
    assert min_size < ciphertext.size <= max_size
    assert np.all(oracle(plaintext) == ciphertext)
    assert np.all(SuffixOracle(seed=2)(plaintext) == ciphertext)


# # # Byte-at-a-time ECB decryption # # #


def detect_ecb_blocksize(encryption_fn, max_blocksize=MAX_BLOCKSIZE):
    """Return the blocksize used by encryption_fn.

    The ciphertext only grows when a longer plaintext spills into a new
    block, and then by exactly one block.
    """
    base_len = encryption_fn(np.zeros(0, dtype=np.uint8)).size
    for prefix_len in range(1, max_blocksize + 1):
        cipher_len = encryption_fn(np.zeros(prefix_len, dtype=np.uint8)).size
        if cipher_len > base_len:
            return cipher_len - base_len
    raise AttackError("Ciphertext length never grew over {} bytes of "
                      "input".format(max_blocksize))


def detect_suffix_len(encryption_fn, blocksize):
    """Length of the unknown plaintext appended by encryption_fn."""
    base_len = encryption_fn(np.zeros(0, dtype=np.uint8)).size
    for prefix_len in range(1, blocksize + 1):
        cipher_len = encryption_fn(np.zeros(prefix_len, dtype=np.uint8)).size
        if cipher_len > base_len:
            # prefix and suffix exactly filled base_len, forcing a pad block
            return base_len - prefix_len
    raise AttackError("No length jump within one {}-byte block".format(
        blocksize))


def _decrypt_byte(encryption_fn, decrypted, blocksize=BLOCKSIZE):
    """Given a function that encrypts cat(known_plaintext, unknown_plaintext):

    If blocksize == 8:
        encrypt(0000000?) -> target_cipher
        encrypt(0000000[0-255]), and figure out which matches target_cipher
        if 0000000A matches, A is the first char of unknown_plaintext

    Later bytes work the same way: the filler shrinks so the next unknown
    byte ends a block, and the last blocksize - 1 known bytes stand in for
    the zeros.

    Parameters
    ----------
    encryption_fn : function with one parameter
    decrypted : np.array of uint8
        Previously decrypted unknown_plaintext.
    blocksize : int

    Returns
    -------
    int or None
        Value of the decrypted byte, or None if no candidate matched.
    """
    offset = decrypted.size
    filler = np.zeros(blocksize - 1 - offset % blocksize, dtype=np.uint8)
    start = offset - offset % blocksize
    target_cipher = encryption_fn(filler)[start:start + blocksize]

    known = np.hstack((filler, decrypted))
    known = known[known.size - (blocksize - 1):]
    possibilities = np.hstack((
        np.tile(known, (2**8, 1)),
        np.arange(2**8, dtype=np.uint8).reshape(-1, 1)))
    cipher = np.apply_along_axis(encryption_fn, axis=1, arr=possibilities)

    block_to_byte = {}
    for byte, block in enumerate(cipher[:, :blocksize]):
        block_to_byte.setdefault(block.tobytes(), byte)
    return block_to_byte.get(target_cipher.tobytes())


def byte_at_a_time_ecb_decryption(encryption_fn):
    """Set 2 - Challenge 12

    Given a function that encrypts
        cat(known_plaintext, unknown_plaintext)
    in ECB mode, decrypt unknown_plaintext.

    encryption_fn must keep its key and unknown_plaintext fixed between
    calls.  If it doesn't, the first byte that fails to match ends the
    attack and whatever was recovered so far is returned.

    Returns
    -------
    np.array of uint8
    """
    blocksize = detect_ecb_blocksize(encryption_fn)
    logger.debug("blocksize %d", blocksize)

    repeated = np.zeros(ECB_CHECK_NBLOCKS * blocksize, dtype=np.uint8)
    if not detect_ecb(encryption_fn(repeated), blocksize):
        raise AttackError("Repeated plaintext blocks did not repeat in the "
                          "ciphertext; the oracle is not using ECB")

    suffix_len = detect_suffix_len(encryption_fn, blocksize)
    logger.debug("unknown plaintext is %d bytes", suffix_len)

    decrypted = np.zeros(0, dtype=np.uint8)
    while decrypted.size < suffix_len:
        byte = _decrypt_byte(encryption_fn, decrypted, blocksize=blocksize)
        if byte is None:
            logger.warning("No match for byte %d of %d; stopping",
                           decrypted.size, suffix_len)
            break
        decrypted = np.append(decrypted, np.uint8(byte))
        logger.debug("byte %d: %#04x", decrypted.size - 1, byte)
    return decrypted


# # # Tests for byte-at-a-time ECB decryption # # #


def test_detect_ecb_blocksize():
    assert detect_ecb_blocksize(SuffixOracle(seed=3)) == 16
    small_blocks = SuffixOracle(key=afb(b"8bytekey"),
                                block_cipher=_RotatingXorCipher())
    assert detect_ecb_blocksize(small_blocks) == 8


def test_detect_ecb_blocksize_no_growth():
    def constant_length(plaintext):
        return np.zeros(32, dtype=np.uint8)
    with pytest.raises(AttackError):
        detect_ecb_blocksize(constant_length, max_blocksize=64)


@pytest.mark.parametrize('size', [0, 1, 15, 16, 17, 138])
def test_detect_suffix_len(size):
    oracle = SuffixOracle(suffix=np.arange(size, dtype=np.uint8), seed=4)
    assert detect_suffix_len(oracle, 16) == size


def test_find_keysize_on_ecb():
    # identical plaintext blocks look like a repeating key of one block
    oracle = SuffixOracle(key=afb(b"YELLOW SUBMARINE"))
    ciphertext = oracle(np.full(128, ord('A'), dtype=np.uint8))
    assert find_keysize(ciphertext) == 16


def test__decrypt_byte():
    unknown_plaintext = afb(b"I was raised by a cup of coffee!")
    encrypter = SuffixOracle(suffix=unknown_plaintext,
                             key=np.zeros(16, dtype=np.uint8))
    byte = _decrypt_byte(encrypter, np.array([], np.uint8), blocksize=16)
    assert byte == ord(b"I")
    byte = _decrypt_byte(encrypter, unknown_plaintext[:20], blocksize=16)
    assert byte == unknown_plaintext[20]


def test_byte_at_a_time_ecb_decryption():
    unknown = afb(b"Rollin' in my 5.0\n")
    encrypter = SuffixOracle(suffix=unknown, seed=5)
    result = byte_at_a_time_ecb_decryption(encrypter)
    assert bfa(result) == bfa(unknown)


def test_byte_at_a_time_ecb_decryption_block_aligned():
    unknown = afb(b"YELLOW SUBMARINE")
    encrypter = SuffixOracle(suffix=unknown, seed=6)
    result = byte_at_a_time_ecb_decryption(encrypter)
    assert bfa(result) == bfa(unknown)


def test_byte_at_a_time_ecb_decryption_secret():
    result = byte_at_a_time_ecb_decryption(SuffixOracle(seed=7))
    assert bfa(result) == bfa(array_from_base64(SECRET_SUFFIX_B64))
    assert bfa(result).startswith(b"Rollin' in my 5.0\n")


def test_byte_at_a_time_ecb_decryption_other_cipher():
    unknown = afb(b"I was raised by a cup of coffee!")
    encrypter = SuffixOracle(suffix=unknown, key=afb(b"8bytekey"),
                             block_cipher=_RotatingXorCipher())
    result = byte_at_a_time_ecb_decryption(encrypter)
    assert bfa(result) == bfa(unknown)


def test_byte_at_a_time_ecb_decryption_rejects_cbc():
    key = afb(b"YELLOW SUBMARINE")
    iv = np.zeros(16, dtype=np.uint8)
    unknown = afb(b"Rollin' in my 5.0\n")

    def cbc_encrypter(plaintext):
        return encrypt_cbc(np.hstack((plaintext, unknown)), key, iv)

    with pytest.raises(AttackError) as excinfo:
        byte_at_a_time_ecb_decryption(cbc_encrypter)
    assert excinfo.value.stage is Stage.ATTACK


def test_byte_at_a_time_ecb_decryption_changing_key(caplog):
    rng = np.random.default_rng(9)
    unknown = afb(b"Rollin' in my 5.0\n")

    def forgetful_encrypter(plaintext):
        return encrypt_ecb(np.hstack((plaintext, unknown)), random_key(rng))

    with caplog.at_level(logging.WARNING, logger=__name__):
        result = byte_at_a_time_ecb_decryption(forgetful_encrypter)
    assert result.size < unknown.size
    assert "No match for byte" in caplog.text
