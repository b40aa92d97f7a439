import tempfile
import unittest
from pathlib import Path

from pmc.paths import output_base_path, sanitize_segment, unique_base_path
from pmc.presets import STREAM_COPY, TV_HD, get_preset


class TestSanitizeSegment(unittest.TestCase):
    def test_illegal_characters_are_replaced_and_collapsed(self):
        self.assertEqual(sanitize_segment('a:b?c**d'), "a_b_c_d")

    def test_trailing_dots_and_spaces_are_trimmed(self):
        self.assertEqual(sanitize_segment("clip. . "), "clip")

    def test_empty_result_becomes_underscore(self):
        self.assertEqual(sanitize_segment("..."), "_")

    def test_reserve_shortens_segment(self):
        s = sanitize_segment("x" * 300, reserve=20)
        self.assertEqual(len(s), 235)


class TestOutputBasePath(unittest.TestCase):
    def test_defaults_to_source_folder_with_suffix(self):
        src = Path("/media/in/Interview A.mov")
        base = output_base_path(src, get_preset(TV_HD))
        self.assertEqual(base, Path("/media/in/Interview A_tv_hd"))

    def test_explicit_output_folder(self):
        src = Path("/media/in/clip.mxf")
        base = output_base_path(src, get_preset(STREAM_COPY), Path("/exports"))
        self.assertEqual(base, Path("/exports/clip_copy"))


class TestUniqueBasePath(unittest.TestCase):
    def test_free_name_is_returned_unchanged(self):
        with tempfile.TemporaryDirectory() as td:
            base = Path(td) / "clip_tv_hd"
            self.assertEqual(unique_base_path(base, "mov"), base)

    def test_existing_outputs_get_incremental_suffixes(self):
        with tempfile.TemporaryDirectory() as td:
            base = Path(td) / "clip_tv_hd"
            Path(f"{base}.mov").write_bytes(b"")
            Path(td, "clip_tv_hd (1).mov").write_bytes(b"")
            resolved = unique_base_path(base, "mov")
            self.assertEqual(resolved.name, "clip_tv_hd (2)")

    def test_other_extension_does_not_collide(self):
        with tempfile.TemporaryDirectory() as td:
            base = Path(td) / "clip_copy"
            Path(f"{base}.mp4").write_bytes(b"")
            self.assertEqual(unique_base_path(base, "mkv"), base)


if __name__ == "__main__":
    unittest.main()
