import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from treepress.config import ConfigError, ConfigLoadRequest, YamlConfigLoader, resolve_config_path
from treepress.config.models import LoggingSettings
from treepress.logging import init_logging

MINIMAL_YAML = """
content:
  repo_path: /srv/blog
"""


class YamlConfigLoaderTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)
        env = mock.patch.dict(os.environ, {}, clear=False)
        env.start()
        self.addCleanup(env.stop)
        for name in list(os.environ):
            if name.startswith("TREEPRESS"):
                os.environ.pop(name)

    def _write(self, text: str, name: str = "treepress.yaml") -> Path:
        path = self.root / name
        path.write_text(text, encoding="utf-8")
        return path

    def _load(self, path: Path, **kwargs):
        kwargs.setdefault("dotenv_path", None)
        return YamlConfigLoader().load_sync(ConfigLoadRequest(yaml_path=str(path), **kwargs))

    def test_minimal_file_gets_defaults(self) -> None:
        config = self._load(self._write(MINIMAL_YAML))

        self.assertEqual(config.content.repo_path, "/srv/blog")
        self.assertEqual(config.content.content_dir, "content")
        self.assertEqual(config.server.port, 8080)
        self.assertEqual(config.git.cgi_timeout_seconds, 300.0)
        self.assertFalse(config.git.allow_anonymous_read)
        self.assertEqual(list(config.webhooks.targets), [])
        self.assertIsNone(config.auth.api_token)

    def test_full_file(self) -> None:
        path = self._write(
            """
server:
  port: 9000
  cache_max_age: 30
content:
  repo_path: /srv/blog
  max_file_bytes: 1024
git:
  allow_anonymous_read: true
webhooks:
  secret: env:HOOK_SECRET
  targets:
    - url: https://hooks.example.test/a
    - url: https://hooks.example.test/b
      secret: own
auth:
  api_token: env:API_TOKEN
"""
        )
        config = self._load(path)

        self.assertEqual(config.server.port, 9000)
        self.assertEqual(config.server.cache_max_age, 30)
        self.assertEqual(config.content.max_file_bytes, 1024)
        self.assertTrue(config.git.allow_anonymous_read)
        self.assertEqual([t.url for t in config.webhooks.targets], ["https://hooks.example.test/a", "https://hooks.example.test/b"])
        self.assertEqual(config.webhooks.targets[1].secret, "own")
        self.assertEqual(config.auth.api_token, "env:API_TOKEN")

    def test_environment_overrides_file_values(self) -> None:
        path = self._write(MINIMAL_YAML)
        os.environ["TREEPRESS__SERVER__PORT"] = "9090"
        os.environ["TREEPRESS__GIT__ALLOW_ANONYMOUS_READ"] = "true"

        config = self._load(path)

        self.assertEqual(config.server.port, 9090)
        self.assertTrue(config.git.allow_anonymous_read)

    def test_dotenv_values_feed_overrides_without_replacing_environment(self) -> None:
        path = self._write(MINIMAL_YAML)
        dotenv = self.root / ".env"
        dotenv.write_text("TREEPRESS__SERVER__PORT=7000\nTREEPRESS__SERVER__HOST=127.0.0.1\n", encoding="utf-8")
        os.environ["TREEPRESS__SERVER__HOST"] = "10.1.1.1"

        config = self._load(path, dotenv_path=str(dotenv))

        self.assertEqual(config.server.port, 7000)
        self.assertEqual(config.server.host, "10.1.1.1")

    def test_missing_content_section_is_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            self._load(self._write("server:\n  port: 1\n"))

    def test_unknown_key_is_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            self._load(self._write(MINIMAL_YAML + "surprise: true\n"))

    def test_non_positive_limit_is_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            self._load(self._write(MINIMAL_YAML + "  max_total_bytes: 0\n"))

    def test_invalid_yaml(self) -> None:
        with self.assertRaises(ConfigError):
            self._load(self._write("content: [unclosed\n"))

    def test_top_level_must_be_mapping(self) -> None:
        with self.assertRaises(ConfigError):
            self._load(self._write("- one\n- two\n"))

    def test_override_into_scalar_is_rejected(self) -> None:
        path = self._write(MINIMAL_YAML)
        os.environ["TREEPRESS__CONTENT__REPO_PATH__NESTED"] = "x"
        with self.assertRaises(ConfigError):
            self._load(path)


class ResolveConfigPathTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)
        env = mock.patch.dict(os.environ, {}, clear=False)
        env.start()
        self.addCleanup(env.stop)
        os.environ.pop("TREEPRESS_CONFIG", None)

    def test_explicit_path_must_exist(self) -> None:
        with self.assertRaises(ConfigError):
            resolve_config_path(str(self.root / "nope.yaml"))

    def test_explicit_path_wins(self) -> None:
        path = self.root / "custom.yaml"
        path.write_text(MINIMAL_YAML, encoding="utf-8")
        (self.root / "treepress.yaml").write_text(MINIMAL_YAML, encoding="utf-8")
        self.assertEqual(resolve_config_path(str(path), cwd=self.root), path)

    def test_environment_variable_before_working_directory(self) -> None:
        path = self.root / "from-env.yaml"
        path.write_text(MINIMAL_YAML, encoding="utf-8")
        (self.root / "treepress.yaml").write_text(MINIMAL_YAML, encoding="utf-8")
        os.environ["TREEPRESS_CONFIG"] = str(path)
        self.assertEqual(resolve_config_path(cwd=self.root), path)

    def test_found_in_ancestor_directory(self) -> None:
        path = self.root / "treepress.yaml"
        path.write_text(MINIMAL_YAML, encoding="utf-8")
        nested = self.root / "a" / "b"
        nested.mkdir(parents=True)
        self.assertEqual(resolve_config_path(cwd=nested), path)


class InitLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level

        def restore() -> None:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)

        self.addCleanup(restore)

    def test_file_handler_is_added_when_path_set(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "logs" / "treepress.log"
            init_logging(LoggingSettings(level="DEBUG", file={"path": str(log_path)}))

            root = logging.getLogger()
            self.assertEqual(root.level, logging.DEBUG)
            self.assertEqual(len(root.handlers), 2)
            self.assertTrue(log_path.parent.is_dir())
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()

    def test_invalid_level_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            init_logging(LoggingSettings(level="LOUD"))


if __name__ == "__main__":
    unittest.main()
