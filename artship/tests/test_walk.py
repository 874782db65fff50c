"""Tests for the tar stream walker."""

import io
import tarfile
import unittest

from artship.tests import base
from artship import walk


class TestWalk(unittest.TestCase):
    def _collect(self, stream):
        seen = []

        def visitor(reader, entry):
            seen.append((entry, reader.read()))

        count = walk.walk(stream, visitor)
        return count, seen

    def test_visits_entries_in_stream_order(self):
        """Test every entry is handed to the visitor in order."""
        stream = base.make_tar([
            base.dir_entry('etc'),
            base.file_entry('etc/hostname', b'box\n'),
            base.symlink_entry('etc/localtime', '/usr/share/zoneinfo/UTC'),
        ])
        count, seen = self._collect(stream)

        self.assertEqual(3, count)
        self.assertEqual(['etc', 'etc/hostname', 'etc/localtime'],
                         [e.name for e, _ in seen])
        self.assertEqual(walk.TypeKind.DIR, seen[0][0].kind)
        self.assertEqual(walk.TypeKind.FILE, seen[1][0].kind)
        self.assertEqual(walk.TypeKind.SYMLINK, seen[2][0].kind)
        self.assertEqual('/usr/share/zoneinfo/UTC', seen[2][0].linkname)

    def test_reader_yields_file_content_only(self):
        """Test readers hold file content and are empty for other kinds."""
        stream = base.make_tar([
            base.dir_entry('bin'),
            base.file_entry('bin/tool', b'#!/bin/sh\necho hi\n', mode=0o755),
        ])
        _, seen = self._collect(stream)

        self.assertEqual(b'', seen[0][1])
        self.assertEqual(b'#!/bin/sh\necho hi\n', seen[1][1])
        self.assertEqual(0o755, seen[1][0].mode)
        self.assertEqual(18, seen[1][0].size)

    def test_whiteouts_are_hidden(self):
        """Test whiteout markers never reach the visitor."""
        stream = base.make_tar([
            base.file_entry('etc/.wh.passwd'),
            base.file_entry('var/cache/.wh..wh..opq'),
            base.file_entry('etc/group', b'root:x:0:\n'),
        ])
        count, seen = self._collect(stream)

        self.assertEqual(1, count)
        self.assertEqual('etc/group', seen[0][0].name)

    def test_type_mapping(self):
        """Test tar type flags map to the expected kinds."""
        stream = base.make_tar([
            base.file_entry('a', b'x'),
            base.hardlink_entry('b', 'a'),
            base.fifo_entry('pipe'),
        ])
        _, seen = self._collect(stream)

        self.assertEqual(walk.TypeKind.HARDLINK, seen[1][0].kind)
        self.assertEqual('a', seen[1][0].linkname)
        self.assertEqual(walk.TypeKind.FIFO, seen[2][0].kind)
        self.assertEqual('', seen[2][0].linkname)

    def test_unknown_type_flag(self):
        """Test an unrecognised type flag maps to UNKNOWN."""
        ti = tarfile.TarInfo(name='weird')
        ti.type = b'Z'
        self.assertEqual(walk.TypeKind.UNKNOWN, walk.kind_for_member(ti))

    def test_stop_ends_walk_early(self):
        """Test Signal.STOP stops the walk after the current entry."""
        stream = base.make_tar([
            base.file_entry('one', b'1'),
            base.file_entry('two', b'2'),
            base.file_entry('three', b'3'),
        ])
        names = []

        def visitor(reader, entry):
            names.append(entry.name)
            if entry.name == 'two':
                return walk.Signal.STOP
            return walk.Signal.CONTINUE

        self.assertEqual(2, walk.walk(stream, visitor))
        self.assertEqual(['one', 'two'], names)

    def test_fail_raises_chained_error(self):
        """Test a Fail signal aborts the walk with the cause attached."""
        stream = base.make_tar([base.file_entry('one', b'1')])
        cause = OSError('disk full')

        with self.assertRaises(walk.WalkError) as ctx:
            walk.walk(stream, lambda reader, entry: walk.Fail(cause))

        self.assertIs(cause, ctx.exception.__cause__)
        self.assertIn('one', str(ctx.exception))

    def test_unexpected_signal(self):
        """Test a visitor returning nonsense is reported."""
        stream = base.make_tar([base.file_entry('one', b'1')])
        with self.assertRaises(walk.WalkError):
            walk.walk(stream, lambda reader, entry: 'carry on')

    def test_invalid_stream(self):
        """Test garbage input is reported as a walk error."""
        with self.assertRaises(walk.WalkError):
            walk.walk(io.BytesIO(b'this is not a tar archive' * 40),
                      lambda reader, entry: None)

    def test_truncated_stream(self):
        """Test a stream cut short in the middle of a file."""
        data = base.make_tar([
            base.file_entry('big', b'x' * 10000)]).getvalue()

        def visitor(reader, entry):
            reader.read()

        with self.assertRaises(walk.WalkError):
            walk.walk(io.BytesIO(data[:2048]), visitor)

    def test_gzip_stream(self):
        """Test compressed archives are read transparently."""
        stream = base.make_tar([base.file_entry('hello', b'world')],
                               mode='w:gz')
        count, seen = self._collect(stream)
        self.assertEqual(1, count)
        self.assertEqual(b'world', seen[0][1])

    def test_non_seekable_stream(self):
        """Test the walker never needs to seek."""
        data = base.make_tar([
            base.file_entry('a', b'alpha'),
            base.file_entry('b', b'beta'),
        ]).getvalue()
        count, seen = self._collect(base.NonSeekable(data))
        self.assertEqual(2, count)
        self.assertEqual(b'beta', seen[1][1])

    def test_is_whiteout(self):
        self.assertTrue(walk.is_whiteout('usr/.wh.lib'))
        self.assertTrue(walk.is_whiteout('.wh..wh..opq'))
        self.assertFalse(walk.is_whiteout('usr/lib/what.h'))
