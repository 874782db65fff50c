"""Tests for the command line interface."""

import json
import unittest
from unittest import mock

from click.testing import CliRunner

from artship import catalog
from artship import diff
from artship import extract
from artship.locate import NotFoundError
from artship import main
from artship import push
from artship import registry
from artship import walk


def _file(path, size=4):
    return catalog.Artifact(path, size, 0o644, walk.TypeKind.FILE)


class CliTestCase(unittest.TestCase):
    def setUp(self):
        super(CliTestCase, self).setUp()
        patcher = mock.patch('artship.main.artship_client.Client')
        self.mock_client_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = self.mock_client_class.return_value
        self.runner = CliRunner()

    def _invoke(self, args):
        return self.runner.invoke(main.cli, args)

    def test_global_options_reach_config(self):
        self.client.tags.return_value = []
        result = self._invoke(['--insecure', '--architecture', 'arm64',
                               '--variant', 'v8', '--token', 'abc',
                               'tags', 'localhost:5000/app'])
        self.assertEqual(0, result.exit_code)

        config = self.mock_client_class.call_args[0][0]
        self.assertFalse(config.secure)
        self.assertEqual('arm64', config.architecture)
        self.assertEqual('v8', config.variant)
        self.assertEqual('abc', config.token)
        self.assertEqual('linux', config.os)

    def test_ls(self):
        self.client.list.return_value = [_file('etc/passwd'),
                                         _file('etc/group')]
        result = self._invoke(['ls', 'alpine'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('Image artifacts:', result.output)
        self.assertIn('etc/passwd\netc/group', result.output)
        self.client.list.assert_called_once_with('alpine', type_filter='all',
                                                 layer=None)

    def test_ls_detailed_with_filter(self):
        self.client.list.return_value = [_file('etc/passwd', 2048)]
        result = self._invoke(['ls', 'alpine', '-f', 'file', '-d',
                               '-l', 'sha256:abc'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('2.0 KB', result.output)
        self.assertIn('0644', result.output)
        self.client.list.assert_called_once_with(
            'alpine', type_filter='file', layer='sha256:abc')

    def test_ls_bad_filter(self):
        result = self._invoke(['ls', 'alpine', '-f', 'socket'])
        self.assertNotEqual(0, result.exit_code)
        self.client.list.assert_not_called()

    def test_ls_empty(self):
        self.client.list.return_value = []
        result = self._invoke(['ls', 'alpine'])
        self.assertIn('No artifacts found', result.output)

    def test_error_exits_one(self):
        self.client.list.side_effect = registry.RegistryError('no such image')
        result = self._invoke(['ls', 'alpine'])
        self.assertEqual(1, result.exit_code)
        self.assertIn('Error: no such image', result.output)

    def test_info(self):
        self.client.info.return_value = _file('etc/os-release', 10)
        result = self._invoke(['info', 'alpine', 'os-release'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('etc/os-release', result.output)
        self.assertIn('10 B', result.output)

    def test_info_not_found(self):
        self.client.info.side_effect = NotFoundError('missing')
        result = self._invoke(['info', 'alpine', 'shadow'])
        self.assertEqual(1, result.exit_code)
        self.assertIn('Artifact shadow not found in alpine', result.output)
        self.assertNotIn('Error:', result.output)

    def test_has(self):
        self.client.has.return_value = True
        result = self._invoke(['has', 'alpine', 'busybox'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('Artifact busybox found in alpine', result.output)

        self.client.has.return_value = False
        result = self._invoke(['has', 'alpine', 'bash'])
        self.assertEqual(1, result.exit_code)
        self.assertIn('Artifact bash not found in alpine', result.output)

    def test_cat(self):
        self.client.cat.return_value = b'ID=alpine\n'
        result = self._invoke(['cat', 'alpine', 'os-release'])
        self.assertEqual(0, result.exit_code)
        self.assertEqual('ID=alpine\n', result.output)

    def test_cp(self):
        summary = extract.ExtractSummary()
        summary.selectors_requested = 2
        summary.selectors_found = 2
        self.client.copy.return_value = summary

        result = self._invoke(['cp', 'nginx', '-a', 'nginx.conf',
                               '-a', 'mime.types', '-o', 'conf/'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('Successfully copied 2 artifacts', result.output)
        self.client.copy.assert_called_once_with(
            'nginx', ['nginx.conf', 'mime.types'], 'conf/')

    def test_cp_partial(self):
        summary = extract.ExtractSummary()
        summary.selectors_requested = 2
        summary.selectors_found = 1
        self.client.copy.return_value = summary

        result = self._invoke(['cp', 'nginx', '-a', 'a', '-a', 'b'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('only found 1 of 2 requested artifacts', result.output)

    def test_cp_requires_artifact(self):
        result = self._invoke(['cp', 'nginx'])
        self.assertNotEqual(0, result.exit_code)
        self.client.copy.assert_not_called()

    def test_extract_default_output(self):
        summary = extract.ExtractSummary()
        summary.files_extracted = 3
        self.client.extract.return_value = summary

        result = self._invoke(['extract', 'ghcr.io/org/tools:v2'])
        self.assertEqual(0, result.exit_code)
        self.client.extract.assert_called_once_with('ghcr.io/org/tools:v2',
                                                    'tools')
        self.assertIn('Files extracted: 3', result.output)

    def test_extract_bad_reference(self):
        result = self._invoke(['extract', 'Not A Ref'])
        self.assertEqual(1, result.exit_code)
        self.client.extract.assert_not_called()

    def test_export(self):
        self.client.export.return_value = 1536
        result = self._invoke(['export', 'alpine', '-o', 'alpine.tar'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('alpine.tar', result.output)
        self.assertIn('1.5 KB', result.output)

    def _diff_result(self):
        return diff.compare({'a': _file('a'), 'b': _file('b')},
                            {'b': _file('b', 8), 'c': _file('c')},
                            source_ref='img:1', target_ref='img:2')

    def test_diff_json(self):
        self.client.diff.return_value = self._diff_result()
        result = self._invoke(['diff', 'img:1', 'img:2', '--json'])
        self.assertEqual(0, result.exit_code)

        parsed = json.loads(result.output)
        self.assertEqual(1, parsed['total_added'])
        self.assertEqual(1, parsed['total_removed'])
        self.assertEqual(1, parsed['total_changed'])
        self.client.diff.assert_called_once_with('img:1', 'img:2',
                                                 include_unchanged=False)

    def test_diff_filtered(self):
        self.client.diff.return_value = self._diff_result()
        result = self._invoke(['diff', 'img:1', 'img:2', '--json',
                               '-f', 'added'])
        parsed = json.loads(result.output)
        self.assertEqual(1, parsed['total_added'])
        self.assertEqual(0, parsed['total_removed'])
        self.assertEqual(0, parsed['total_changed'])

    def test_diff_text(self):
        self.client.diff.return_value = self._diff_result()
        result = self._invoke(['diff', 'img:1', 'img:2', '--no-color'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('Comparing img:1 → img:2', result.output)
        self.assertNotIn('\x1b[', result.output)

    def test_tags(self):
        self.client.tags.return_value = ['3.18', '3.19']
        result = self._invoke(['tags', 'alpine'])
        self.assertEqual(0, result.exit_code)
        self.assertEqual('Available tags:\n 3.18\n 3.19\n', result.output)

    def test_meta(self):
        self.client.meta.return_value = {'digest': 'sha256:abc',
                                         'os': 'linux'}
        result = self._invoke(['meta', 'alpine'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('"digest": "sha256:abc"', result.output)

    def test_mirror(self):
        self.client.mirror.return_value = push.MirrorResult(
            'src/app:v1', 'dst/app:v1', 'sha256:abc', 2048)
        result = self._invoke(['mirror', 'src/app:v1', 'dst/app:v1',
                               '--dst-username', 'me',
                               '--dst-password', 'secret'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('Digest:      sha256:abc', result.output)
        self.assertIn('Size:        2.0 KB', result.output)

        kwargs = self.client.mirror.call_args[1]
        self.assertEqual({'username': None, 'password': None, 'token': None},
                         kwargs['source_credentials'])
        self.assertEqual({'username': 'me', 'password': 'secret',
                          'token': None},
                         kwargs['dest_credentials'])

    def test_pack(self):
        self.client.pack.return_value = 'sha256:feed'
        result = self._invoke(['pack', 'localhost:5000/data:v1', '.'])
        self.assertEqual(0, result.exit_code)
        self.assertIn('sha256:feed', result.output)
        self.client.pack.assert_called_once_with('localhost:5000/data:v1',
                                                 '.')

    @mock.patch('artship.main.util.get_version', return_value='1.2.3')
    def test_version(self, _mock_version):
        result = self._invoke(['version'])
        self.assertEqual(0, result.exit_code)
        self.assertEqual('1.2.3\n', result.output)
