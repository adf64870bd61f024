import io
import os
import stat
import tarfile
import tempfile
import unittest
from pathlib import Path

import lz4.frame

from storysnap import archive


def _write_raw_lz4_tar(path: Path, members):
    with lz4.frame.open(str(path), mode="wb") as compressed:
        with tarfile.open(fileobj=compressed, mode="w|") as tar:
            for info, payload in members:
                if payload is None:
                    tar.addfile(info)
                else:
                    info.size = len(payload)
                    tar.addfile(info, io.BytesIO(payload))


class ExtractLz4TarTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)

    def test_round_trip_preserves_content_and_permission_bits(self):
        src = self.root / "src"
        (src / "data" / "nested").mkdir(parents=True)
        (src / "data" / "blockstore.db").write_bytes(b"\x00\x01block" * 1000)
        (src / "data" / "nested" / "run.sh").write_text("#!/bin/sh\necho hi\n")
        (src / "config.toml").write_text("moniker = 'n'\n")
        os.chmod(src / "data" / "nested" / "run.sh", 0o755)
        os.chmod(src / "config.toml", 0o600)

        archive_path = self.root / "snap.tar.lz4"
        archive.create_lz4_tar(str(src), str(archive_path))

        dest = self.root / "dest"
        written = archive.extract_lz4_tar(str(archive_path), str(dest))
        self.assertEqual(written, 3)

        for rel in ("data/blockstore.db", "data/nested/run.sh", "config.toml"):
            self.assertEqual((dest / rel).read_bytes(), (src / rel).read_bytes())
            self.assertEqual(
                stat.S_IMODE((dest / rel).stat().st_mode),
                stat.S_IMODE((src / rel).stat().st_mode),
            )

    def test_existing_destination_tree_is_overwritten_in_place(self):
        src = self.root / "src"
        (src / "data").mkdir(parents=True)
        (src / "data" / "state.db").write_bytes(b"new")
        archive_path = self.root / "snap.tar.lz4"
        archive.create_lz4_tar(str(src), str(archive_path))

        dest = self.root / "dest"
        (dest / "data").mkdir(parents=True)
        (dest / "data" / "state.db").write_bytes(b"old-and-longer")
        (dest / "data" / "keep.txt").write_bytes(b"untouched")

        archive.extract_lz4_tar(str(archive_path), str(dest))

        self.assertEqual((dest / "data" / "state.db").read_bytes(), b"new")
        self.assertEqual((dest / "data" / "keep.txt").read_bytes(), b"untouched")

    def test_symlinks_are_skipped_with_warning(self):
        link = tarfile.TarInfo("data/link")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/passwd"
        regular = tarfile.TarInfo("data/file.bin")
        regular.mode = 0o644
        archive_path = self.root / "links.tar.lz4"
        _write_raw_lz4_tar(archive_path, [(link, None), (regular, b"payload")])

        dest = self.root / "dest"
        with self.assertLogs("storysnap.archive", level="WARNING") as logs:
            archive.extract_lz4_tar(str(archive_path), str(dest))

        self.assertFalse(os.path.lexists(dest / "data" / "link"))
        self.assertEqual((dest / "data" / "file.bin").read_bytes(), b"payload")
        self.assertTrue(any("data/link" in line for line in logs.output))

    def test_rejects_entries_escaping_destination(self):
        evil = tarfile.TarInfo("../escaped.txt")
        evil.mode = 0o644
        archive_path = self.root / "evil.tar.lz4"
        _write_raw_lz4_tar(archive_path, [(evil, b"x")])

        with self.assertRaises(ValueError):
            archive.extract_lz4_tar(str(archive_path), str(self.root / "dest"))
        self.assertFalse((self.root / "escaped.txt").exists())

    def test_corrupt_archive_propagates_error(self):
        archive_path = self.root / "corrupt.tar.lz4"
        archive_path.write_bytes(b"definitely not lz4")

        with self.assertRaises(Exception):
            archive.extract_lz4_tar(str(archive_path), str(self.root / "dest"))


if __name__ == "__main__":
    unittest.main()
