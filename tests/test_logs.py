import logging
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from rns_manager.logs import (
    ROOT_LOGGER,
    SizeRotatingFileHandler,
    active_handler,
    init_logging,
    log_path,
    log_security,
    reset_logging,
)


class TestLogs(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = TemporaryDirectory()
        self.dir = Path(self._temp.name)
        self.logger = logging.getLogger(f"{ROOT_LOGGER}.tests")

    def tearDown(self) -> None:
        reset_logging()
        self._temp.cleanup()

    def test_line_format(self) -> None:
        path = self.dir / "rns_management.log"
        init_logging(path)

        self.logger.info("hello %s", "mesh")
        active_handler().flush()

        line = path.read_text(encoding="utf-8").strip()
        self.assertRegex(line, r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] \[INFO\] hello mesh$")

    def test_security_level_is_distinct(self) -> None:
        path = self.dir / "rns_management.log"
        init_logging(path)

        log_security(self.logger, "Rejected %s", "evil.tar.gz")
        active_handler().flush()

        self.assertIn("[SECURITY] Rejected evil.tar.gz", path.read_text(encoding="utf-8"))

    def test_rotation_keeps_bounded_history(self) -> None:
        path = self.dir / "rns_management.log"
        init_logging(path, max_bytes=200, backup_count=3)

        for index in range(200):
            self.logger.info("message number %d with some padding", index)
        active_handler().flush()

        names = sorted(p.name for p in self.dir.iterdir())
        self.assertEqual(
            names,
            ["rns_management.log", "rns_management.log.1", "rns_management.log.2", "rns_management.log.3"],
        )
        self.assertIn("message number 199", path.read_text(encoding="utf-8"))
        for name in names:
            self.assertLess((self.dir / name).stat().st_size, 400)

    def test_oversized_file_rotates_at_startup(self) -> None:
        path = self.dir / "rns_management.log"
        path.write_text("x" * 500, encoding="utf-8")

        init_logging(path, max_bytes=100)

        self.assertEqual((self.dir / "rns_management.log.1").stat().st_size, 500)
        self.assertEqual(path.stat().st_size, 0)

    def test_unwritable_path_falls_back_to_tempdir(self) -> None:
        blocker = self.dir / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        fallback_dir = self.dir / "tmp"
        fallback_dir.mkdir()

        with mock.patch("rns_manager.logs.tempfile.gettempdir", return_value=str(fallback_dir)):
            handler = init_logging(blocker / "rns_management.log")

        self.assertIsInstance(handler, SizeRotatingFileHandler)
        self.assertEqual(log_path(), fallback_dir / "rns_management.log")

    def test_no_writable_location_drops_records(self) -> None:
        blocker = self.dir / "not-a-dir"
        blocker.write_text("", encoding="utf-8")

        with mock.patch("rns_manager.logs.tempfile.gettempdir", return_value=str(blocker)):
            handler = init_logging(blocker / "rns_management.log")

        self.assertIsInstance(handler, logging.NullHandler)
        self.assertIsNone(log_path())
        self.logger.error("still fine")

    def test_write_failures_are_counted_not_raised(self) -> None:
        handler = init_logging(self.dir / "rns_management.log")
        handler.stream.close()
        broken = mock.Mock()
        broken.tell.return_value = 0
        broken.write.side_effect = OSError("No space left on device")
        handler.stream = broken

        self.logger.warning("lost")

        self.assertEqual(handler.dropped, 1)

    def test_reinit_replaces_handler(self) -> None:
        init_logging(self.dir / "a.log")
        init_logging(self.dir / "b.log")

        handlers = [h for h in logging.getLogger(ROOT_LOGGER).handlers if isinstance(h, SizeRotatingFileHandler)]
        self.assertEqual(len(handlers), 1)
        self.assertEqual(log_path(), self.dir / "b.log")


if __name__ == "__main__":
    unittest.main()
