import os
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from rns_manager.core import (
    CONFIG_ENV_VAR,
    BackupConfig,
    CommandsConfig,
    Config,
    LoggingConfig,
    default_config_path,
    load_config,
    resolve_real_home,
    save_config,
)


class TestCoreConfig(unittest.TestCase):
    def test_defaults_match_documented_values(self) -> None:
        cfg = Config()

        self.assertEqual(cfg.cache.ttl, 10.0)
        self.assertEqual(cfg.commands.max_attempts, 3)
        self.assertEqual(cfg.commands.backoff_base, 2.0)
        self.assertEqual(cfg.commands.apt_timeout, 600.0)
        self.assertEqual(cfg.services.poll_interval, 1.0)
        self.assertEqual(cfg.services.max_wait, 10.0)
        self.assertEqual(cfg.backup.keep, 3)
        self.assertEqual(cfg.logging.max_bytes, 1024 * 1024)
        self.assertEqual(cfg.logging.backup_count, 3)

    def test_optional_paths_are_omitted_when_unset(self) -> None:
        self.assertNotIn("root", BackupConfig().to_dict())
        self.assertNotIn("path", LoggingConfig().to_dict())
        self.assertEqual(BackupConfig(root="/srv/b").to_dict()["root"], "/srv/b")

    def test_from_dict_clamps_bad_values(self) -> None:
        commands = CommandsConfig.from_dict({"max_attempts": 0, "pip_timeout": "45"})
        backup = BackupConfig.from_dict({"keep": -2})
        logging_cfg = LoggingConfig.from_dict({"level": "debug"})

        self.assertEqual(commands.max_attempts, 1)
        self.assertEqual(commands.pip_timeout, 45.0)
        self.assertEqual(backup.keep, 0)
        self.assertEqual(logging_cfg.level, "DEBUG")

    def test_resolved_paths_default_under_home(self) -> None:
        home = Path("/home/node")
        cfg = Config()

        self.assertEqual(cfg.backup.resolved_root(home), home / ".reticulum_backups")
        self.assertEqual(cfg.logging.resolved_path(home), home / "rns_management.log")

    def test_missing_file_loads_defaults(self) -> None:
        with TemporaryDirectory() as temp_dir:
            cfg = load_config(Path(temp_dir) / "absent.toml")
        self.assertEqual(cfg, Config())

    def test_save_config_is_idempotent(self) -> None:
        with TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "nested" / "config.toml"
            cfg = Config()
            cfg.cache.ttl = 3.0
            cfg.backup.keep = 5

            self.assertTrue(save_config(cfg, path))
            self.assertFalse(save_config(cfg, path))

            loaded = load_config(path)
            self.assertEqual(loaded.cache.ttl, 3.0)
            self.assertEqual(loaded.backup.keep, 5)

    def test_partial_file_keeps_other_defaults(self) -> None:
        with TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "config.toml"
            path.write_text("[services]\nmax_wait = 4\n", encoding="utf-8")

            cfg = load_config(path)

        self.assertEqual(cfg.services.max_wait, 4.0)
        self.assertEqual(cfg.services.poll_interval, 1.0)
        self.assertEqual(cfg.commands, CommandsConfig())

    def test_env_var_overrides_config_path(self) -> None:
        with mock.patch.dict(os.environ, {CONFIG_ENV_VAR: "/tmp/custom.toml"}):
            self.assertEqual(default_config_path(Path("/home/x")), Path("/tmp/custom.toml"))
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(
                default_config_path(Path("/home/x")),
                Path("/home/x/.config/rns-manager/config.toml"),
            )

    def test_real_home_ignores_suspicious_sudo_user(self) -> None:
        with mock.patch.dict(os.environ, {"SUDO_USER": "../etc"}):
            with mock.patch("rns_manager.core.pwd.getpwnam") as getpwnam:
                home = resolve_real_home()
        getpwnam.assert_not_called()
        self.assertEqual(home, Path.home())

    def test_real_home_uses_sudo_user_home(self) -> None:
        with TemporaryDirectory() as temp_dir:
            entry = mock.Mock(pw_dir=temp_dir)
            with mock.patch.dict(os.environ, {"SUDO_USER": "alice"}):
                with mock.patch("rns_manager.core.pwd.getpwnam", return_value=entry):
                    self.assertEqual(resolve_real_home(), Path(temp_dir))


if __name__ == "__main__":
    unittest.main()
