import subprocess
import unittest
from pathlib import Path
from unittest.mock import patch, MagicMock
import tempfile

from rtspmic.utils import read_attr, require_root, run_command

class TestRequireRoot(unittest.TestCase):

    @patch('os.geteuid')
    def test_require_root_as_root(self, mock_geteuid):
        mock_geteuid.return_value = 0

        try:
            require_root()
        except SystemExit:
            self.fail("require_root raised SystemExit unexpectedly!")

    @patch('os.geteuid')
    def test_require_root_as_user(self, mock_geteuid):
        mock_geteuid.return_value = 1000

        with self.assertRaises(SystemExit) as cm:
            require_root()

        self.assertEqual(cm.exception.code, 1)

    @patch('sys.argv', ['script.py', '--dev-mode'])
    @patch('os.geteuid')
    def test_dev_mode_allowed(self, mock_geteuid):
        mock_geteuid.return_value = 1000

        try:
            require_root(allow_dev_mode=True)
        except SystemExit:
            self.fail("require_root raised SystemExit in allowed dev mode")

    @patch('sys.argv', ['script.py', '--dev-mode'])
    @patch('os.geteuid')
    def test_dev_mode_flag_ignored_unless_allowed(self, mock_geteuid):
        mock_geteuid.return_value = 1000

        with self.assertRaises(SystemExit):
            require_root()


class TestRunCommand(unittest.TestCase):

    @patch('rtspmic.utils.subprocess.run')
    def test_returns_stdout(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout='active\n')
        self.assertEqual(run_command(['systemctl', 'is-active', 'x.service']), 'active\n')

    @patch('rtspmic.utils.subprocess.run')
    def test_missing_tool_is_none(self, mock_run):
        mock_run.side_effect = FileNotFoundError('arecord')
        self.assertIsNone(run_command(['arecord', '-l']))

    @patch('rtspmic.utils.subprocess.run')
    def test_non_zero_exit_is_none(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1, stdout='')
        self.assertIsNone(run_command(['udevadm', 'control', '--reload-rules']))

    @patch('rtspmic.utils.subprocess.run')
    def test_timeout_is_none(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd='arecord', timeout=10)
        self.assertIsNone(run_command(['arecord', '-l']))


class TestReadAttr(unittest.TestCase):

    def test_strips_value(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / 'devpath'
            path.write_text('1.4\n')
            self.assertEqual(read_attr(path), '1.4')

    def test_missing_and_empty(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            empty = Path(tmpdir) / 'serial'
            empty.write_text('\n')
            self.assertIsNone(read_attr(empty))
            self.assertIsNone(read_attr(Path(tmpdir) / 'nope'))

if __name__ == '__main__':
    unittest.main()
