"""
Tests for the stream chunker.

Batches are numbered from 1, arrive in input order, and only the last one
may be short.
"""

import math

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pipette_ingestion.stream.chunker import (
    check_batch_size,
    chunk,
    decode_lines,
    read_batches,
)
from pipette_kernel.exceptions import ConfigurationError, DecodeError


class TestDecodeLines:
    def test_decodes_each_line(self):
        lines = ['{"a": 1}\n', "[1, 2]\n", '"text"\n', "42\n"]
        assert list(decode_lines(lines)) == [{"a": 1}, [1, 2], "text", 42]

    def test_accepts_bytes(self):
        assert list(decode_lines([b'{"a": "\xc3\xa9"}\n'])) == [{"a": "é"}]

    def test_blank_lines_are_skipped(self):
        lines = ['{"a": 1}\n', "\n", "   \n", '{"a": 2}\n']
        assert list(decode_lines(lines)) == [{"a": 1}, {"a": 2}]

    def test_invalid_line_reports_line_number(self):
        lines = ['{"a": 1}\n', "\n", "{not json}\n"]
        it = decode_lines(lines)
        assert next(it) == {"a": 1}
        with pytest.raises(DecodeError) as exc_info:
            next(it)
        assert exc_info.value.line_number == 3
        assert exc_info.value.line == "{not json}"
        assert exc_info.value.code == "DECODE_ERROR"

    def test_is_lazy(self):
        def lines():
            yield '{"a": 1}\n'
            raise AssertionError("read past the first line")

        assert next(decode_lines(lines())) == {"a": 1}


class TestChunk:
    def test_exact_multiple(self):
        batches = list(chunk(range(6), 3))
        assert [b.number for b in batches] == [1, 2]
        assert [b.records for b in batches] == [(0, 1, 2), (3, 4, 5)]

    def test_short_final_batch(self):
        batches = list(chunk(range(7), 3))
        assert [len(b) for b in batches] == [3, 3, 1]
        assert batches[-1].records == (6,)

    def test_empty_input_yields_nothing(self):
        assert list(chunk([], 5)) == []

    def test_batch_larger_than_input(self):
        batches = list(chunk(["a", "b"], 10))
        assert len(batches) == 1
        assert list(batches[0]) == ["a", "b"]

    @pytest.mark.parametrize("bad", [0, -1, 1.5, "10", True, None])
    def test_invalid_batch_size_rejected(self, bad):
        with pytest.raises(ConfigurationError, match="batch size"):
            chunk([1, 2, 3], bad)

    def test_pulls_input_one_batch_at_a_time(self):
        pulled = []

        def values():
            for i in range(10):
                pulled.append(i)
                yield i

        it = chunk(values(), 4)
        next(it)
        assert pulled == [0, 1, 2, 3]

    @given(
        length=st.integers(min_value=0, max_value=200),
        batch_size=st.integers(min_value=1, max_value=50),
    )
    @settings(max_examples=100)
    def test_partition_property(self, length, batch_size):
        batches = list(chunk(range(length), batch_size))

        assert len(batches) == math.ceil(length / batch_size)
        assert [b.number for b in batches] == list(range(1, len(batches) + 1))
        assert all(len(b) == batch_size for b in batches[:-1])
        assert all(0 < len(b) <= batch_size for b in batches)
        flattened = [r for b in batches for r in b.records]
        assert flattened == list(range(length))


class TestReadBatches:
    def test_decodes_and_partitions(self):
        lines = [f'{{"n": {i}}}\n' for i in range(5)]
        batches = list(read_batches(lines, 2))
        assert [len(b) for b in batches] == [2, 2, 1]
        assert batches[2].records == ({"n": 4},)

    def test_decode_error_surfaces_after_earlier_batches(self):
        lines = ['{"n": 1}\n', '{"n": 2}\n', "oops\n"]
        it = read_batches(lines, 2)
        assert next(it).records == ({"n": 1}, {"n": 2})
        with pytest.raises(DecodeError):
            next(it)


def test_check_batch_size_returns_value():
    assert check_batch_size(5000) == 5000
