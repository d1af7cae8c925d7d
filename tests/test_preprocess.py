import tempfile
import unittest
from pathlib import Path

from dim.client import PreprocessError
from dim.preprocess import Directive, apply_preprocesses, detect_encoding, parse_directive, parse_directives


class TestDirectiveParsing(unittest.TestCase):
    def test_encoding_directive_is_uppercased(self) -> None:
        directive = parse_directive("encoding-utf8")

        self.assertEqual(directive, Directive(kind="encoding", raw="encoding-utf8", target="UTF8"))

    def test_unknown_directive_is_kept_as_unknown(self) -> None:
        self.assertEqual(parse_directive("gunzip").kind, "unknown")

    def test_unknown_codec_is_rejected(self) -> None:
        with self.assertRaises(PreprocessError):
            parse_directive("encoding-not-a-codec")

    def test_empty_target_is_rejected(self) -> None:
        with self.assertRaises(PreprocessError):
            parse_directive("encoding-")

    def test_blank_entries_are_dropped(self) -> None:
        self.assertEqual(len(parse_directives(["", "encoding-sjis", "  "])), 1)


class TestEncoding(unittest.TestCase):
    def test_detects_shift_jis(self) -> None:
        self.assertEqual(detect_encoding("日本語".encode("shift_jis")), "cp932")

    def test_detects_utf8_bom(self) -> None:
        self.assertEqual(detect_encoding(b"\xef\xbb\xbfabc"), "utf-8-sig")

    def test_reencodes_shift_jis_to_utf8(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "data.csv"
            path.write_bytes("名前,値\n東京,1\n".encode("shift_jis"))

            notes = apply_preprocesses(path, parse_directives(["encoding-utf8"]))

            self.assertEqual(path.read_bytes(), "名前,値\n東京,1\n".encode("utf-8"))
            self.assertEqual(notes, ["Converted encoding to UTF8"])

    def test_file_already_in_target_encoding_is_untouched(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "data.csv"
            path.write_bytes("a,b\n".encode("utf-8"))

            notes = apply_preprocesses(path, parse_directives(["encoding-utf-8"]))

            self.assertEqual(notes, [])
            self.assertEqual(path.read_bytes(), b"a,b\n")

    def test_unknown_directives_are_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "data.csv"
            path.write_bytes(b"\xe9")

            notes = apply_preprocesses(path, parse_directives(["unzip"]))

            self.assertEqual(notes, [])
            self.assertEqual(path.read_bytes(), b"\xe9")

    def test_unrepresentable_text_raises(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "data.csv"
            path.write_text("東京", encoding="utf-8")

            with self.assertRaises(PreprocessError):
                apply_preprocesses(path, parse_directives(["encoding-ascii"]))


if __name__ == "__main__":
    unittest.main()
