"""
Tests for daemon/server.py - request handling and build streaming.
"""

import asyncio
import json
import shlex
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

from buildlink.core.configs import ServerSettings
from buildlink.daemon.protocol import (
    PROTOCOL_VERSION,
    BuildOptions,
    encode_frame,
    serialize_build_command,
)
from buildlink.daemon.server import MAX_LINE_LENGTH, BuildServer, _read_lines, index_root


class FakeWriter:
    """Collects frames written by the server."""

    def __init__(self):
        self.data = b""
        self.closed = False

    def write(self, data):
        self.data += data

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    @property
    def frames(self):
        return [json.loads(line) for line in self.data.splitlines()]


class TestBuildServer(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _server(self, build_command=""):
        return BuildServer(
            self.root,
            settings=ServerSettings(build_command=build_command),
            socket_path=self.root / "test.sock",
            pid_path=self.root / "test.pid",
        )

    def _request(self, server, message):
        writer = FakeWriter()

        async def go():
            reader = asyncio.StreamReader()
            reader.feed_data(encode_frame(message))
            reader.feed_eof()
            await asyncio.wait_for(server._handle_client(reader, writer), timeout=30)

        asyncio.run(go())
        return writer

    def test_initializing_server_greets_and_closes(self):
        server = self._server()
        writer = self._request(server, {"command": "health"})
        self.assertEqual(writer.frames, [{"type": "hello", "status": "initializing", "version": PROTOCOL_VERSION}])
        self.assertTrue(writer.closed)

    def test_health(self):
        server = self._server()
        server.initialized = True
        frames = self._request(server, {"command": "health"}).frames

        self.assertEqual(frames[0]["status"], "ready")
        self.assertEqual(frames[1]["status"], "ok")
        self.assertEqual(frames[1]["result"]["root"], str(self.root.resolve()))

    def test_unknown_command(self):
        server = self._server()
        server.initialized = True
        frames = self._request(server, {"command": "dance"}).frames
        self.assertEqual(frames[1], {"status": "error", "result": None, "error": "Unknown command: dance"})

    def test_stale_client_version(self):
        server = self._server()
        server.initialized = True
        message = serialize_build_command(BuildOptions(), version="0.0.1")
        frames = self._request(server, message).frames

        self.assertEqual(frames[1]["status"], "stale_version")
        self.assertEqual(len(frames), 2)
        self.assertTrue(server._shutdown_event.is_set())

    def test_build_without_command(self):
        server = self._server()
        server.initialized = True
        frames = self._request(server, serialize_build_command(BuildOptions())).frames

        self.assertEqual(frames[1]["status"], "ok")
        self.assertEqual(frames[2]["type"], "progress")
        self.assertEqual(frames[-1]["type"], "finished")
        self.assertEqual(server.builds_run, 1)

    def test_build_streams_command_output(self):
        server = self._server("echo compiling; echo 'foo.php:10 error' 1>&2; exit 3")
        server.initialized = True
        frames = self._request(server, serialize_build_command(BuildOptions())).frames[2:]

        self.assertEqual(frames[0]["type"], "progress")
        self.assertTrue(frames[0]["text"].startswith("Running:"))
        self.assertIn({"type": "progress", "text": "compiling"}, frames)
        self.assertIn({"type": "error", "text": "foo.php:10 error"}, frames)
        self.assertIn({"type": "error", "text": "Build command exited with status 3"}, frames)
        self.assertEqual(frames[-1], {"type": "finished", "text": ""})

    def test_successful_command_has_no_errors(self):
        server = self._server("echo ok")
        server.initialized = True
        frames = self._request(server, serialize_build_command(BuildOptions())).frames[2:]
        self.assertFalse([f for f in frames if f["type"] == "error"])
        self.assertEqual(frames[-1]["type"], "finished")
    def test_very_long_output_line_still_completes(self):
        printer = f"{shlex.quote(sys.executable)} -c \"print('x' * 200000)\""
        server = self._server(printer)
        server.initialized = True
        frames = self._request(server, serialize_build_command(BuildOptions())).frames[3:]

        self.assertEqual(frames[-1]["type"], "finished")
        output = [f for f in frames if f["type"] == "progress"]
        self.assertGreater(len(output), 1)
        self.assertTrue(all(len(f["text"]) <= MAX_LINE_LENGTH for f in output))
        self.assertEqual(sum(len(f["text"]) for f in output), 200000)
        self.assertFalse([f for f in frames if f["type"] == "error"])


class TestReadLines(unittest.TestCase):

    def _lines(self, data):
        async def go():
            stream = asyncio.StreamReader()
            stream.feed_data(data)
            stream.feed_eof()
            return [line async for line in _read_lines(stream)]

        return asyncio.run(go())

    def test_splits_on_newlines(self):
        self.assertEqual(self._lines(b"one\ntwo\nthree"), ["one", "two", "three"])

    def test_splits_overlong_lines(self):
        lines = self._lines(b"y" * (MAX_LINE_LENGTH * 2 + 10) + b"\nend\n")
        self.assertEqual([len(line) for line in lines], [MAX_LINE_LENGTH, MAX_LINE_LENGTH, 10, 3])


class TestIndexRoot(unittest.TestCase):

    def test_skips_vcs_directories(self):
        temp_dir = Path(tempfile.mkdtemp())
        try:
            (temp_dir / "src").mkdir()
            (temp_dir / "src" / "a.php").write_text("")
            (temp_dir / ".git").mkdir()
            (temp_dir / ".git" / "HEAD").write_text("")

            files = index_root(temp_dir)
            self.assertEqual(files, [temp_dir / "src" / "a.php"])
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)


if __name__ == "__main__":
    unittest.main()
