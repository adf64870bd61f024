import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

from storysnap import transport
from storysnap.errors import DependencyError, IntegrityError, NetworkError


class _DummyTqdm:
    def __init__(self, *_args, **_kwargs):
        pass

    def update(self, *_args, **_kwargs):
        pass

    def close(self):
        pass


class _FakeResponse:
    def __init__(self, body=b"", status_code=200, headers=None, chunk=4, fail_after=None):
        self.body = body
        self.status_code = status_code
        self.headers = headers if headers is not None else {"Content-Length": str(len(body))}
        self.chunk = chunk
        self.fail_after = fail_after
        self.closed = False

    def iter_content(self, chunk_size=1):
        for offset in range(0, len(self.body), self.chunk):
            if self.fail_after is not None and offset >= self.fail_after:
                raise requests.ConnectionError("connection reset")
            yield self.body[offset:offset + self.chunk]

    def close(self):
        self.closed = True


class _FakeHttp:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class DownloadHttpTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)
        self.dest = self.root / "out" / "story_snapshot.tar.lz4"
        patcher = mock.patch.object(transport, "tqdm", _DummyTqdm)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_streams_body_to_destination_with_timeout(self):
        http = _FakeHttp(_FakeResponse(b"snapshot-bytes"))

        written = transport.download_http(http, "https://x/snap", str(self.dest), timeout=(3, 7))

        self.assertEqual(written, len(b"snapshot-bytes"))
        self.assertEqual(self.dest.read_bytes(), b"snapshot-bytes")
        self.assertFalse(Path(f"{self.dest}.part").exists())
        _, kwargs = http.calls[0]
        self.assertEqual(kwargs["timeout"], (3, 7))
        self.assertTrue(kwargs["stream"])

    def test_missing_zero_or_invalid_content_length_is_integrity_failure(self):
        for headers in ({}, {"Content-Length": "0"}, {"Content-Length": "abc"}, {"Content-Length": "-5"}):
            with self.subTest(headers=headers):
                http = _FakeHttp(_FakeResponse(b"data", headers=headers))
                with self.assertRaises(IntegrityError):
                    transport.download_http(http, "https://x/snap", str(self.dest))
                self.assertFalse(self.dest.exists())
                self.assertFalse(Path(f"{self.dest}.part").exists())

    def test_non_2xx_is_network_error(self):
        http = _FakeHttp(_FakeResponse(b"nope", status_code=404))
        with self.assertRaises(NetworkError):
            transport.download_http(http, "https://x/snap", str(self.dest))

    def test_connection_failure_is_network_error(self):
        http = _FakeHttp(requests.ConnectTimeout("timed out"))
        with self.assertRaises(NetworkError):
            transport.download_http(http, "https://x/snap", str(self.dest))

    def test_short_body_is_integrity_failure_and_leaves_nothing(self):
        response = _FakeResponse(b"abcdef", headers={"Content-Length": "100"})
        with self.assertRaises(IntegrityError):
            transport.download_http(_FakeHttp(response), "https://x/snap", str(self.dest))
        self.assertFalse(self.dest.exists())
        self.assertFalse(Path(f"{self.dest}.part").exists())

    def test_interrupted_stream_removes_partial_file(self):
        response = _FakeResponse(b"abcdefghijkl", fail_after=4)
        with self.assertRaises(NetworkError):
            transport.download_http(_FakeHttp(response), "https://x/snap", str(self.dest))
        self.assertFalse(Path(f"{self.dest}.part").exists())
        self.assertTrue(response.closed)


class Aria2Tests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)

    def test_install_failure_is_fatal(self):
        failed = subprocess.CompletedProcess(args=[], returncode=100, stdout=None, stderr="E: no sudo")
        with mock.patch.object(transport.shutil, "which", return_value=None), mock.patch.object(
            transport.subprocess, "run", return_value=failed
        ) as run:
            with self.assertRaises(DependencyError):
                transport.ensure_aria2()
        self.assertEqual(run.call_args[0][0], ["sudo", "apt-get", "install", "aria2", "-y"])

    def test_installs_when_missing(self):
        ok = subprocess.CompletedProcess(args=[], returncode=0, stdout=None, stderr="")
        with mock.patch.object(
            transport.shutil, "which", side_effect=[None, "/usr/bin/aria2c"]
        ), mock.patch.object(transport.subprocess, "run", return_value=ok):
            self.assertEqual(transport.ensure_aria2(), "/usr/bin/aria2c")

    def test_parallel_download_invokes_aria2c_with_segments(self):
        dest = self.root / "Story_snapshot.lz4"
        dest.write_bytes(b"stale partial")
        ok = subprocess.CompletedProcess(args=[], returncode=0, stdout=None, stderr="")
        with mock.patch.object(
            transport.shutil, "which", return_value="/usr/bin/aria2c"
        ), mock.patch.object(transport.subprocess, "run", return_value=ok) as run:
            transport.download_parallel("https://x/story.lz4", str(dest))

        cmd = run.call_args[0][0]
        self.assertEqual(cmd[0], "/usr/bin/aria2c")
        self.assertIn("--split=16", cmd)
        self.assertIn("--max-connection-per-server=16", cmd)
        self.assertIn(f"--dir={self.root}", cmd)
        self.assertIn("--out=Story_snapshot.lz4", cmd)
        self.assertEqual(cmd[-1], "https://x/story.lz4")
        self.assertFalse(dest.exists())

    def test_parallel_download_failure_is_network_error(self):
        failed = subprocess.CompletedProcess(args=[], returncode=3, stdout=None, stderr="404")
        with mock.patch.object(
            transport.shutil, "which", return_value="/usr/bin/aria2c"
        ), mock.patch.object(transport.subprocess, "run", return_value=failed):
            with self.assertRaises(NetworkError):
                transport.download_parallel("https://x/story.lz4", str(self.root / "a.lz4"))


if __name__ == "__main__":
    unittest.main()
