"""Unit tests for the line framer and response classifier."""
import unittest

from eggbot.models import CommandMode
from eggbot.protocol import (
    LineFramer,
    Verdict,
    classify_line,
    is_ok_line,
    is_unknown_command_line,
)


class TestLineFramer(unittest.TestCase):
    """Tests for LineFramer."""

    def setUp(self):
        self.framer = LineFramer()

    def test_single_complete_line(self):
        self.assertEqual(self.framer.consume("OK\r\n"), ["OK"])
        self.assertEqual(self.framer.pending, "")

    def test_all_terminators(self):
        """CRLF, LF and bare CR all end a line."""
        lines = self.framer.consume("a\r\nb\nc\rd\r\n")
        self.assertEqual(lines, ["a", "b", "c", "d"])

    def test_partial_line_held_back(self):
        self.assertEqual(self.framer.consume("V,2."), [])
        self.assertEqual(self.framer.pending, "V,2.")
        self.assertEqual(self.framer.consume("9.1\r\n"), ["V,2.9.1"])

    def test_lines_are_trimmed_and_empty_lines_dropped(self):
        lines = self.framer.consume("  L1  \r\n\r\n   \nL2\t\n")
        self.assertEqual(lines, ["L1", "L2"])

    def test_chunk_boundaries_do_not_matter(self):
        """Every split of the same stream yields the same lines."""
        stream = "L1\r\nL2\r\nUnknown CMD: XYZ\rOK\n"
        expected = LineFramer().consume(stream)

        for split in range(1, len(stream)):
            framer = LineFramer()
            lines = framer.consume(stream[:split]) + framer.consume(stream[split:])
            self.assertEqual(lines, expected, f"split at {split}")

        framer = LineFramer()
        lines = []
        for ch in stream:
            lines.extend(framer.consume(ch))
        self.assertEqual(lines, expected)

    def test_crlf_split_across_chunks(self):
        """A CR at the end of a chunk followed by LF yields one line."""
        self.assertEqual(self.framer.consume("OK\r"), ["OK"])
        self.assertEqual(self.framer.consume("\nNEXT\n"), ["NEXT"])

    def test_consume_none(self):
        self.assertEqual(self.framer.consume(None), [])

    def test_bytes_are_decoded_as_utf8(self):
        self.assertEqual(self.framer.consume_bytes(b"V,2.9.1\r\n"), ["V,2.9.1"])

    def test_multibyte_sequence_split_across_chunks(self):
        data = "Température\r\n".encode("utf-8")
        split = data.index(b"\xc3") + 1
        self.assertEqual(self.framer.consume_bytes(data[:split]), [])
        self.assertEqual(self.framer.consume_bytes(data[split:]), ["Température"])

    def test_invalid_bytes_are_replaced(self):
        lines = self.framer.consume_bytes(b"bad\xff\r\n")
        self.assertEqual(lines, ["bad\ufffd"])

    def test_reset_drops_pending_tail(self):
        self.framer.consume("partial")
        self.framer.consume_bytes(b"\xc3")
        self.framer.reset()

        self.assertEqual(self.framer.pending, "")
        self.assertEqual(self.framer.consume("OK\r\n"), ["OK"])


class TestSentinels(unittest.TestCase):
    """Tests for sentinel line detection."""

    def test_ok_any_case(self):
        for line in ("ok", "OK", "Ok", " ok "):
            self.assertTrue(is_ok_line(line), line)

    def test_ok_must_match_exactly(self):
        self.assertFalse(is_ok_line("OKAY"))
        self.assertFalse(is_ok_line("not ok"))

    def test_unknown_command_substring(self):
        self.assertTrue(is_unknown_command_line("Unknown CMD: XYZ"))
        self.assertTrue(is_unknown_command_line("!8 Err: unknown cmd"))
        self.assertFalse(is_unknown_command_line("unknown command"))


class TestClassifyLine(unittest.TestCase):
    """Tests for classify_line."""

    def test_line_mode_resolves_first_line(self):
        result = classify_line(CommandMode.LINE, [], "V,2.9.1")
        self.assertEqual(result.verdict, Verdict.RESOLVE)
        self.assertEqual(result.value, "V,2.9.1")

    def test_line_mode_does_not_inspect_sentinels(self):
        result = classify_line(CommandMode.LINE, [], "Unknown CMD: XYZ")
        self.assertEqual(result.verdict, Verdict.RESOLVE)

    def test_expect_ok_accumulates(self):
        result = classify_line(CommandMode.EXPECT_OK, [], "L1")
        self.assertEqual(result.verdict, Verdict.ACCUMULATE)

    def test_expect_ok_resolves_on_ok(self):
        accumulated = ["L1", "L2"]
        result = classify_line(CommandMode.EXPECT_OK, accumulated, "ok")

        self.assertEqual(result.verdict, Verdict.RESOLVE)
        self.assertEqual(result.value, ["L1", "L2"])
        self.assertIsNot(result.value, accumulated)

    def test_expect_ok_with_nothing_before_ok(self):
        result = classify_line(CommandMode.EXPECT_OK, [], "OK")
        self.assertEqual(result.value, [])

    def test_expect_ok_rejects_unknown_command(self):
        accumulated = ["L1"]
        result = classify_line(CommandMode.EXPECT_OK, accumulated, "Unknown CMD: XYZ")

        self.assertEqual(result.verdict, Verdict.REJECT)
        self.assertEqual(result.value, ["L1", "Unknown CMD: XYZ"])
        self.assertEqual(accumulated, ["L1"])


if __name__ == "__main__":
    unittest.main()
