import sys
import tempfile
import unittest
from pathlib import Path

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from image_rewriter.runner import CommandFailed, CommandNotFound, run_command


class TestRunCommand(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.test_dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    async def test_missing_executable(self):
        with self.assertRaises(CommandNotFound):
            await run_command([str(self.test_dir / "no-such-scanner")], 5)

    async def test_executable_that_cannot_start(self):
        script = self.test_dir / "grype"
        script.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
        script.chmod(0o644)
        with self.assertRaises(CommandFailed) as ctx:
            await run_command([str(script)], 5)
        self.assertIsInstance(ctx.exception.__cause__, PermissionError)


if __name__ == '__main__':
    unittest.main()
