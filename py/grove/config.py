"""Repository configuration (``.grove/config``, INI format).

    [core]
    repositoryformatversion = 1

    [user]
    name = Ada Lovelace
    email = ada@example.org

    [remote "origin"]
    url = /srv/repos/project
"""

import configparser
import io
import logging
import os
from typing import Dict, Optional

from grove.errors import GroveError, RemoteNotFound, SchemaVersionError
from grove.fsutil import atomic_write, read_bytes
from grove.refs import validate_ref_name


logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
AUTHOR_ENV = "GROVE_AUTHOR"
DEFAULT_AUTHOR = "Grove User <grove@localhost>"


def _remote_section(name: str) -> str:
    return f'remote "{name}"'


class RepoConfig:
    """configparser-backed settings, saved atomically after each change."""

    def __init__(self, path: str):
        self.path = path
        self._parser = configparser.ConfigParser(interpolation=None)
        raw = read_bytes(path)
        if raw is not None:
            self._parser.read_string(raw.decode("utf-8"))
            version = self._parser.get("core", "repositoryformatversion",
                                       fallback=str(FORMAT_VERSION))
            if version != str(FORMAT_VERSION):
                raise SchemaVersionError("repository", version)

    @classmethod
    def create(cls, path: str) -> "RepoConfig":
        config = cls(path)
        if not config._parser.has_section("core"):
            config._parser.add_section("core")
        config._parser.set("core", "repositoryformatversion", str(FORMAT_VERSION))
        config.save()
        return config

    def save(self) -> None:
        buf = io.StringIO()
        self._parser.write(buf)
        atomic_write(self.path, buf.getvalue().encode("utf-8"))

    def get(self, section: str, key: str, fallback: Optional[str] = None) -> Optional[str]:
        return self._parser.get(section, key, fallback=fallback)

    def set(self, section: str, key: str, value: str) -> None:
        if not self._parser.has_section(section):
            self._parser.add_section(section)
        self._parser.set(section, key, value)
        self.save()

    # -- identity --

    def author(self, explicit: Optional[str] = None) -> str:
        """Author string: explicit > $GROVE_AUTHOR > [user] > default."""
        if explicit:
            return explicit
        env = os.environ.get(AUTHOR_ENV)
        if env:
            return env
        name = self.get("user", "name")
        email = self.get("user", "email")
        if name:
            return f"{name} <{email or ''}>"
        return DEFAULT_AUTHOR

    # -- remotes --

    def remotes(self) -> Dict[str, str]:
        """{remote name: url}."""
        result = {}
        for section in self._parser.sections():
            if section.startswith('remote "') and section.endswith('"'):
                name = section[len('remote "'):-1]
                result[name] = self._parser.get(section, "url", fallback="")
        return dict(sorted(result.items()))

    def remote_url(self, name: str) -> str:
        url = self.remotes().get(name)
        if url is None:
            raise RemoteNotFound(name)
        return url

    def add_remote(self, name: str, url: str) -> None:
        validate_ref_name(name)
        if "/" in name:
            raise GroveError(f"invalid remote name: {name}")
        section = _remote_section(name)
        if self._parser.has_section(section):
            raise GroveError(f"remote {name} already exists")
        self._parser.add_section(section)
        self._parser.set(section, "url", url)
        self.save()
        logger.info("added remote %s -> %s", name, url)

    def remove_remote(self, name: str) -> None:
        if not self._parser.remove_section(_remote_section(name)):
            raise RemoteNotFound(name)
        self.save()
        logger.info("removed remote %s", name)

    def set_remote_url(self, name: str, url: str) -> None:
        section = _remote_section(name)
        if not self._parser.has_section(section):
            raise RemoteNotFound(name)
        self._parser.set(section, "url", url)
        self.save()
