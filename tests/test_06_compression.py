"""
Tests for run-length encoding of stored values.

Tests cover:
- Runs of five or more collapse to ~{n}~{c}
- Short runs stay literal
- The marker character is escaped
- Digits and markers inside runs survive
- Malformed input raises ValueError
"""
import pytest

from speechflow.storage.compression import rle_compress, rle_decompress


class TestRle:

    def test_documented_example(self):
        assert rle_compress("aaaaaaab~c") == "~7~ab~~c"
        assert rle_decompress("~7~ab~~c") == "aaaaaaab~c"

    def test_short_runs_literal(self):
        assert rle_compress("aaaab") == "aaaab"

    def test_empty(self):
        assert rle_compress("") == ""
        assert rle_decompress("") == ""

    @pytest.mark.parametrize("text", [
        "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA==",
        "12222223",
        "~~~~~~~",
        "~~~",
        '{"payload":"0000000000000000"}',
        "tab\t\t\t\t\t\tnewline\n\n\n\n\n\n",
        "ééééééé",
    ])
    def test_round_trip(self, text):
        assert rle_decompress(rle_compress(text)) == text

    def test_marker_run(self):
        assert rle_compress("~~~~~") == "~5~~"

    def test_digit_run(self):
        assert rle_compress("1111111") == "~7~1"

    @pytest.mark.parametrize("bad", ["~", "~x", "~12~", "abc~9"])
    def test_malformed(self, bad):
        with pytest.raises(ValueError):
            rle_decompress(bad)
