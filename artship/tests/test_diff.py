"""Tests for filesystem comparison."""

import json
import unittest

from artship import catalog
from artship import constants
from artship import diff
from artship import util
from artship import walk


def _file(path, size, mode=0o644):
    return catalog.Artifact(path, size, mode, walk.TypeKind.FILE)


class TestCompare(unittest.TestCase):
    def _catalogs(self):
        source = {'a': _file('a', 10), 'b': _file('b', 20)}
        target = {'b': _file('b', 20), 'c': _file('c', 5)}
        return source, target

    def test_added_removed_unchanged(self):
        source, target = self._catalogs()
        result = diff.compare(source, target, include_unchanged=True)

        self.assertEqual(['a'], [e.path for e in result.removed])
        self.assertEqual(['c'], [e.path for e in result.added])
        self.assertEqual([], result.modified)
        self.assertEqual(['b'], [e.path for e in result.unchanged])
        self.assertEqual(1, result.total_removed)
        self.assertEqual(1, result.total_added)
        self.assertEqual(0, result.total_changed)

    def test_unchanged_not_collected_by_default(self):
        source, target = self._catalogs()
        self.assertIsNone(diff.compare(source, target).unchanged)

    def test_modified_by_size(self):
        result = diff.compare({'f': _file('f', 1)}, {'f': _file('f', 2)})
        self.assertEqual(1, result.total_changed)
        entry = result.modified[0]
        self.assertEqual((1, 2), (entry.old_size, entry.new_size))

    def test_modified_by_mode(self):
        result = diff.compare({'f': _file('f', 1, 0o644)},
                              {'f': _file('f', 1, 0o755)})
        self.assertEqual(1, result.total_changed)
        self.assertEqual(0o755, result.modified[0].new_mode)

    def test_identical_never_modified(self):
        result = diff.compare({'f': _file('f', 7)}, {'f': _file('f', 7)},
                              include_unchanged=True)
        self.assertEqual([], result.modified)
        self.assertEqual(1, len(result.unchanged))

    def test_sorted_by_path(self):
        names = ['zeta', 'alpha', 'mid/b', 'mid/a', 'beta']
        source = {}
        target = {n: _file(n, 1) for n in names}
        result = diff.compare(source, target)
        self.assertEqual(sorted(names), [e.path for e in result.added])

        result = diff.compare(target, source)
        self.assertEqual(sorted(names), [e.path for e in result.removed])

    def test_directories_included(self):
        source = {'etc': catalog.Artifact('etc', 0, 0o755,
                                          walk.TypeKind.DIR)}
        result = diff.compare(source, {})
        self.assertEqual(walk.TypeKind.DIR, result.removed[0].kind)


class TestDiffResult(unittest.TestCase):
    def _result(self):
        source = {'a': _file('a', 10), 'm': _file('m', 1, 0o600)}
        target = {'c': _file('c', 5), 'm': _file('m', 2048, 0o600)}
        return diff.compare(source, target, source_ref='img:1',
                            target_ref='img:2')

    def test_to_dict(self):
        d = self._result().to_dict()
        self.assertEqual('img:1', d['source_image'])
        self.assertEqual('img:2', d['target_image'])
        self.assertEqual(1, d['total_added'])
        self.assertNotIn('unchanged', d)
        self.assertEqual(
            {'path': 'c', 'status': 'added', 'type': 'file',
             'new_size': 5, 'new_mode': '0644'},
            d['added'][0])
        self.assertEqual(
            {'path': 'm', 'status': 'modified', 'type': 'file',
             'old_size': 1, 'new_size': 2048, 'old_mode': '0600',
             'new_mode': '0600'},
            d['modified'][0])

    def test_to_json(self):
        parsed = json.loads(self._result().to_json())
        self.assertEqual(1, parsed['total_removed'])

    def test_render_plain(self):
        text = self._result().render(color=False)
        self.assertIn('Comparing img:1 → img:2', text)
        self.assertIn('+ Added:    1', text)
        self.assertIn('- a (file, 10 B)', text)
        self.assertIn('~ m (1 B → 2.0 KB)', text)
        self.assertNotIn('\x1b[', text)

    def test_render_color(self):
        self.assertIn('\x1b[', self._result().render(color=True))

    def test_filter_result(self):
        result = self._result()
        added = diff.filter_result(result, constants.DIFF_ADDED)
        self.assertEqual(1, added.total_added)
        self.assertEqual(0, added.total_removed)
        self.assertEqual(0, added.total_changed)

        self.assertIs(result, diff.filter_result(result, 'all'))
        self.assertIs(result, diff.filter_result(result, ''))

    def test_filter_result_unknown(self):
        self.assertRaises(util.InvalidInputError, diff.filter_result,
                          self._result(), 'renamed')
