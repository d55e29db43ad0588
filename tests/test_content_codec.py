"""
Unit tests for the content codec
"""

import pytest
from itertools import islice

from keygate.utils import content_codec


class TestContentCodec:
    """Test cases for encode/decode"""

    @pytest.mark.parametrize("plaintext", [
        "print('hello')",
        "",
        "local t = {1, 2, 3}\nfor i, v in ipairs(t) do print(i, v) end",
        "unicode: éèê ☃ \U0001F600",
        "x" * 10000,
    ])
    @pytest.mark.parametrize("seed", [0, 1, 12345, 2 ** 31, 2 ** 32 - 1])
    def test_round_trip(self, plaintext, seed):
        """Decoding the encoded bytes gives back the original text"""
        encoded = content_codec.encode(plaintext, seed)
        assert content_codec.decode_text(encoded, seed) == plaintext

    def test_round_trip_bytes(self):
        data = bytes(range(256))
        assert content_codec.decode(content_codec.encode(data, 99), 99) == data

    def test_encoded_length_matches_utf8_length(self):
        text = "café"
        assert len(content_codec.encode(text, 7)) == len(text.encode('utf-8'))

    def test_different_seeds_give_different_output(self):
        plaintext = "print('the same script')" * 4
        outputs = {content_codec.encode(plaintext, seed) for seed in (1, 2, 3, 4, 5)}
        assert len(outputs) == 5

    def test_encoding_changes_bytes(self):
        plaintext = "game:GetService('Players')"
        assert content_codec.encode(plaintext, 42) != plaintext.encode('utf-8')

    def test_wrong_seed_does_not_decode(self):
        encoded = content_codec.encode("secret script body", 1000)
        assert content_codec.decode(encoded, 1001) != b"secret script body"

    def test_keystream_matches_lcg(self):
        """State advances before each byte; the low byte is the key"""
        state = 5
        expected = []
        for _ in range(8):
            state = (state * 1664525 + 1013904223) % 2 ** 32
            expected.append(state & 0xFF)
        assert list(islice(content_codec.keystream(5), 8)) == expected

    def test_first_byte_known_value(self):
        # seed 0 -> state 1013904223 (0x3C6EF35F), low byte 0x5F
        assert content_codec.encode(b"\x00", 0) == b"\x5f"

    @pytest.mark.parametrize("seed", [-1, 2 ** 32, 1.5, "7", True])
    def test_invalid_seed(self, seed):
        with pytest.raises(ValueError):
            content_codec.encode("x", seed)

    def test_invalid_plaintext_type(self):
        with pytest.raises(ValueError):
            content_codec.encode(12345, 1)

    def test_generate_seed_range(self):
        seeds = {content_codec.generate_seed() for _ in range(50)}
        assert all(0 <= s < 2 ** 32 for s in seeds)
        assert len(seeds) > 1

    def test_split_seed(self):
        assert content_codec.split_seed(0xDEADBEEF) == (0xDEAD, 0xBEEF)
        hi, lo = content_codec.split_seed(123456789)
        assert hi * 65536 + lo == 123456789
