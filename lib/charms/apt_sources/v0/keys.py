# Copyright 2024 Canonical Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Acquire signing keys for apt sources.

A key can be read from a local file, downloaded over HTTP(S), or fetched from a keyserver by its
fingerprint. It is then either installed as a binary keyring file under `/etc/apt/keyrings/` or
inlined, ASCII-armored, into the `Signed-By` field of the source entry.

All the PGP work is done by running `gpg`. Where `gpg` lives is up to the caller:

```python
gpg = keys.Gnupg("/usr/bin/gpg")
key = keys.PendingKey(
    keys.key_source_from_location("https://example.com/key.asc"),
    keys.FileKeyDestination(keys.key_path("example")),
    gpg,
)
entry = sources.SourceEntry.from_line("example", "deb https://example.com noble main", key=key)
entry.install_key()
entry.install(sources.OverwriteAction.Overwrite)
```
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from subprocess import CalledProcessError
from typing import Optional, Union
from urllib.parse import urlparse

from charms.apt_sources.v0.sources import (
    Error,
    MultilineValue,
    OptionValue,
    PermissionDeniedError,
    TextValue,
)

logger = logging.getLogger(__name__)

# The unique Charmhub library identifier, never change it
LIBID = "0c9d7a3e52b14f6d8e1a6f4b2c7d9e35"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


KEYRING_DIR = Path("/etc/apt/keyrings")
KEY_FILE_SUFFIX = "-archive-keyring.gpg"
DOWNLOAD_TIMEOUT = 30.0

_ARMOR_MATCHER = re.compile(r"^\s*-----\s*BEGIN PGP PUBLIC KEY BLOCK\s*-----\s*$")


class InvalidKeyLocationError(Error):
    """Raised when a key location is neither a URL nor an existing file."""

    def __init__(self, location: str) -> None:
        super().__init__(f"This key location is not a URL or an existing file: {location}")
        self.location = location


class KeyDownloadFailedError(Error):
    """Raised when a key can not be downloaded."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to download the key from {url}: {reason}")
        self.url = url
        self.reason = reason


class KeyserverFetchFailedError(Error):
    """Raised when a key can not be fetched from a keyserver."""

    def __init__(self, fingerprint: str, reason: str) -> None:
        super().__init__(f"Failed to fetch the key {fingerprint} from the keyserver: {reason}")
        self.fingerprint = fingerprint
        self.reason = reason


class NotPgpKeyError(Error):
    """Raised when the key material is not a PGP public key."""

    def __init__(self, location: str) -> None:
        super().__init__(f"This is not a PGP public key: {location}")
        self.location = location


class KeyEncodingFailedError(Error):
    """Raised when gpg fails to armor or dearmor a key."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"gpg failed to convert the key: {reason}")
        self.reason = reason


class GnupgNotFoundError(Error):
    """Raised when the gpg executable can not be found."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Could not find the gpg executable: {path}. Is gnupg installed?")
        self.path = path


def is_armored(key: bytes) -> bool:
    """Return whether the key is ASCII-armored, by looking at its first line."""
    try:
        first_line = key.decode("utf-8").lstrip().splitlines()[0]
    except (UnicodeDecodeError, IndexError):
        return False
    return _ARMOR_MATCHER.match(first_line) is not None


class Gnupg:
    """Runs the `gpg` executable.

    Every call that needs a keyring uses a fresh temporary one, so the user's own keyrings are
    never read or changed.
    """

    def __init__(self, executable: Union[str, Path] = "gpg"):
        self.executable = str(executable)

    def __repr__(self):
        """Represent the Gnupg client."""
        return f"<{self.__module__}.{type(self).__name__}: {self.executable}>"

    def _run(self, args: list[str], data: Optional[bytes] = None) -> bytes:
        """Run gpg, returning its stdout.

        Raises:
            GnupgNotFoundError if the executable does not exist
            CalledProcessError if gpg exits with an error
        """
        cmd = [self.executable, *args]
        try:
            ps = subprocess.run(cmd, capture_output=True, check=True, input=data)
        except FileNotFoundError:
            raise GnupgNotFoundError(self.executable) from None
        except CalledProcessError as e:
            logger.error(
                "subprocess.run(%s):\nstdout:\n%s\nstderr:\n%s",
                cmd,
                e.stdout.decode(errors="replace"),
                e.stderr.decode(errors="replace"),
            )
            raise
        return ps.stdout

    def is_pgp_key(self, key: bytes) -> bool:
        """Return whether `key` holds a PGP public key, armored or not."""
        try:
            self._run(["--show-keys"], key)
        except CalledProcessError:
            return False
        return True

    def dearmor(self, key: bytes) -> bytes:
        """Return the binary form of a key, which is returned as-is if it is not armored."""
        if not is_armored(key):
            return key
        try:
            return self._run(["--dearmor"], key)
        except CalledProcessError as e:
            raise KeyEncodingFailedError(e.stderr.decode(errors="replace").strip()) from None

    def armor(self, key: bytes) -> bytes:
        """Return the ASCII-armored form of a key, which is returned as-is if it is armored."""
        if is_armored(key):
            return key
        with tempfile.TemporaryDirectory() as home:
            keyring = os.path.join(home, "keyring.gpg")
            with open(keyring, "wb") as f:
                f.write(key)
            try:
                return self._run(self._keyring_args(home, keyring) + ["--armor", "--export"])
            except CalledProcessError as e:
                raise KeyEncodingFailedError(e.stderr.decode(errors="replace").strip()) from None

    def recv_key(self, keyserver: str, fingerprint: str) -> bytes:
        """Fetch a key from a keyserver, returning it in binary form.

        Raises:
            KeyserverFetchFailedError if the key could not be fetched
        """
        with tempfile.TemporaryDirectory() as home:
            keyring = os.path.join(home, "keyring.gpg")
            args = self._keyring_args(home, keyring)
            try:
                self._run(args + ["--keyserver", keyserver, "--recv-keys", fingerprint])
                key = self._run(args + ["--export", fingerprint])
            except CalledProcessError as e:
                raise KeyserverFetchFailedError(
                    fingerprint, e.stderr.decode(errors="replace").strip()
                ) from None
        if not key:
            raise KeyserverFetchFailedError(fingerprint, "the keyserver returned no key")
        return key

    @staticmethod
    def _keyring_args(home: str, keyring: str) -> list[str]:
        return ["--homedir", home, "--no-default-keyring", "--keyring", keyring]


@dataclass(frozen=True)
class FileKeySource:
    """A key in a local file."""

    path: Path

    @property
    def location(self) -> str:
        """Return where the key comes from."""
        return str(self.path)

    def fetch(self, gpg: Gnupg) -> bytes:
        """Read the key.

        Raises:
            InvalidKeyLocationError if the file does not exist
            PermissionDeniedError if the file can not be read
        """
        try:
            return Path(self.path).read_bytes()
        except FileNotFoundError:
            raise InvalidKeyLocationError(str(self.path)) from None
        except PermissionError:
            raise PermissionDeniedError() from None


@dataclass(frozen=True)
class DownloadKeySource:
    """A key at an HTTP(S) URL."""

    url: str
    timeout: float = field(default=DOWNLOAD_TIMEOUT, compare=False)

    @property
    def location(self) -> str:
        """Return where the key comes from."""
        return self.url

    def fetch(self, gpg: Gnupg) -> bytes:
        """Download the key.

        Raises:
            KeyDownloadFailedError if the download fails
        """
        logger.debug("downloading key from %s", self.url)
        try:
            with urllib.request.urlopen(self.url, timeout=self.timeout) as response:
                return response.read()
        except urllib.error.HTTPError as e:
            raise KeyDownloadFailedError(self.url, f"{e.code} {e.reason}") from None
        except urllib.error.URLError as e:
            raise KeyDownloadFailedError(self.url, str(e.reason)) from None


@dataclass(frozen=True)
class KeyserverKeySource:
    """A key on a keyserver, identified by its fingerprint."""

    keyserver: str
    fingerprint: str

    @property
    def location(self) -> str:
        """Return where the key comes from."""
        return f"{self.keyserver} ({self.fingerprint})"

    def fetch(self, gpg: Gnupg) -> bytes:
        """Fetch the key with gpg.

        Raises:
            KeyserverFetchFailedError if the key could not be fetched
        """
        logger.debug("fetching key %s from %s", self.fingerprint, self.keyserver)
        return gpg.recv_key(self.keyserver, self.fingerprint)


KeySource = Union[FileKeySource, DownloadKeySource, KeyserverKeySource]


def key_source_from_location(location: str, keyserver: Optional[str] = None) -> KeySource:
    """Work out where a key comes from.

    Args:
        location: a key fingerprint if `keyserver` is given, otherwise a URL or a file path
        keyserver: the keyserver to fetch the key from

    Raises:
        InvalidKeyLocationError if the location is not a URL and no such file exists
    """
    if keyserver:
        return KeyserverKeySource(keyserver, location)
    if urlparse(location).scheme in ("http", "https"):
        return DownloadKeySource(location)
    if os.path.isfile(location):
        return FileKeySource(Path(location))
    raise InvalidKeyLocationError(location)


def key_path(name: str, keyring_dir: Optional[Union[str, Path]] = None) -> Path:
    """Return the default keyring file for a named source."""
    directory = Path(keyring_dir) if keyring_dir is not None else KEYRING_DIR
    return directory / f"{name}{KEY_FILE_SUFFIX}"


@dataclass(frozen=True)
class FileKeyDestination:
    """Install the key as a binary keyring file."""

    path: Path


@dataclass(frozen=True)
class InlineKeyDestination:
    """Inline the ASCII-armored key into the source entry."""


KeyDestination = Union[FileKeyDestination, InlineKeyDestination]


@dataclass
class PendingKey:
    """A signing key which has not been acquired yet."""

    source: KeySource
    destination: KeyDestination
    gpg: Gnupg = field(default_factory=Gnupg)

    def resolve(self) -> OptionValue:
        """Acquire the key and return the value for the `Signed-By` option.

        Returns:
            the path of the keyring file, or the lines of the armored key when inlining

        Raises:
            NotPgpKeyError if the key material is not a PGP public key
            PermissionDeniedError if the keyring file can not be written
        """
        key = self.source.fetch(self.gpg)
        if not self.gpg.is_pgp_key(key):
            raise NotPgpKeyError(self.source.location)

        if isinstance(self.destination, InlineKeyDestination):
            armored = self.gpg.armor(key).decode("utf-8")
            return MultilineValue(armored.strip().splitlines())

        path = Path(self.destination.path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(self.gpg.dearmor(key))
        except PermissionError:
            raise PermissionDeniedError() from None
        logger.info("installed signing key to %s", path)
        return TextValue(str(path))
