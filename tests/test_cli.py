import io
import sys
import tempfile
import unittest
import zlib
from contextlib import redirect_stdout
from pathlib import Path

import structlog

sys.path.insert(0, str(Path(__file__).resolve().parent))

from builders import build_manifest, build_raf, sample_mesh
from rafpatch import ArchiveIndex, ManifestIndex, build_cli, main

TEXTURE = b"texture" * 300
CLICK = bytes(range(80))


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.release = self.tmp / "0.0.0.25"
        self.release.mkdir()
        self.compressed = zlib.compress(TEXTURE)
        self.archive_path = build_raf(
            self.release,
            [
                ("textures/ahri.dds", self.compressed),
                ("sounds/click.wav", CLICK),
                ("characters/ahri.skn", zlib.compress(sample_mesh().encode())),
            ],
        )
        build_manifest(
            self.release / "releasemanifest",
            [("", 1, 3, 0, 0), ("textures", 0, 0, 0, 1), ("sounds", 0, 0, 1, 1), ("characters", 0, 0, 2, 1)],
            [
                ("ahri.dds", len(TEXTURE), len(self.compressed)),
                ("click.wav", 1, 1),
                ("ahri.skn", 1, 1),
            ],
        )

    def tearDown(self) -> None:
        structlog.reset_defaults()
        self._tmp.cleanup()

    def _run(self, *argv: str) -> str:
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            main(list(argv))
        return buffer.getvalue()

    def test_build_cli_requires_a_command(self) -> None:
        parser = build_cli()
        with redirect_stdout(io.StringIO()), self.assertRaises(SystemExit):
            parser.parse_args([])

    def test_list_prints_matching_entries_and_a_summary(self) -> None:
        output = self._run("list", str(self.archive_path), "--pattern", "AHRI")
        lines = output.splitlines()
        self.assertEqual(len(lines), 3)
        self.assertTrue(lines[0].startswith("textures/ahri.dds is of size "))
        self.assertTrue(lines[1].startswith("characters/ahri.skn is of size "))
        self.assertTrue(lines[2].startswith("3 entries in 0.0.0.25/Archive_1.raf RAF of total size "))

    def test_extract_writes_files_and_obj(self) -> None:
        output_dir = self.tmp / "extracted"
        output = self._run("extract", str(self.archive_path), str(output_dir), "--obj")
        self.assertIn("Extracted 4 file(s)", output)
        self.assertEqual((output_dir / "ahri.dds").read_bytes(), TEXTURE)
        self.assertTrue((output_dir / "ahri.skn.obj").exists())

    def test_patch_updates_archive_and_manifest(self) -> None:
        mods = self.tmp / "mods"
        mods.mkdir()
        (mods / "click.wav").write_bytes(b"new click sound")

        output = self._run(
            "patch", str(self.tmp), "--replacements", str(mods), "--release-dir", str(self.release)
        )
        self.assertEqual(output.strip(), "Patched 1 entry(s) in 0.0.0.25/Archive_1.raf")
        with ArchiveIndex(self.archive_path) as archive:
            self.assertEqual(archive.read("sounds/click.wav"), b"new click sound")
        with ManifestIndex(self.release / "releasemanifest") as manifest:
            click = manifest.lookup("/sounds/click.wav")
            self.assertEqual((click.size, click.compressed_size), (15, 15))

    def test_patch_without_replacements_exits(self) -> None:
        mods = self.tmp / "empty"
        mods.mkdir()
        with self.assertRaises(SystemExit):
            self._run("patch", str(self.archive_path), "--replacements", str(mods))

    def test_fix_manifest_reports_updated_records(self) -> None:
        output = self._run(
            "-v", "fix-manifest", str(self.archive_path), "--manifest", str(self.release / "releasemanifest")
        )
        self.assertEqual(output.strip(), "Updated 2 release manifest record(s)")
        output = self._run(
            "fix-manifest", str(self.release), "--release-dir", str(self.release)
        )
        self.assertEqual(output.strip(), "Updated 0 release manifest record(s)")

    def test_fix_manifest_needs_a_manifest(self) -> None:
        with redirect_stdout(io.StringIO()), self.assertRaises(SystemExit):
            build_cli().parse_args(["fix-manifest", str(self.archive_path)])


if __name__ == "__main__":
    unittest.main()
