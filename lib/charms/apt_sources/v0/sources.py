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

"""Declare apt repository sources in the deb822 format.

This module builds apt source entries, either from explicit fields or from a one-line-style
`sources.list` directive, and writes them to `/etc/apt/sources.list.d/` as deb822 stanzas. It can
also convert an existing one-line-style `.list` file into a `.sources` file, keeping comments and
commented-out entries.

Read more about both formats here:
    https://manpages.ubuntu.com/manpages/noble/en/man5/sources.list.5.html

To install a new source from explicit fields:

```python
entry = sources.SourceEntry.from_options(
    "example",
    uris=["https://example.com/ubuntu"],
    suites=["noble"],
    components=["main"],
    architectures=["amd64"],
)
try:
    entry.install(sources.OverwriteAction.Fail)
except sources.NewSourceFileAlreadyExistsError as e:
    logger.error("source already installed: %s", e.path)
```

Any valid `sources.list` line may be used instead:

```python
line = "deb [arch=amd64 signed-by=/etc/apt/keyrings/example.gpg] https://example.com noble main"
entry = sources.SourceEntry.from_line("example", line)
entry.install(sources.OverwriteAction.Overwrite)
```

The above writes `/etc/apt/sources.list.d/example.sources`:

```
Enabled: yes
Types: deb
URIs: https://example.com
Suites: noble
Components: main
Signed-By: /etc/apt/keyrings/example.gpg
Architectures: amd64
```

To convert `/etc/apt/sources.list.d/example.list` to `example.sources`, keeping a backup in
`example.list.bak` and removing the original:

```python
converter = sources.EntryConverter.from_name("example", backup=sources.Backup())
converter.convert()
```
"""

from __future__ import annotations

import io
import logging
import os
import re
import shutil
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from subprocess import PIPE, CalledProcessError, check_output
from typing import IO, TYPE_CHECKING, Callable, Iterable, Optional, TextIO, Union

if TYPE_CHECKING:
    from charms.apt_sources.v0.keys import PendingKey

logger = logging.getLogger(__name__)

# The unique Charmhub library identifier, never change it
LIBID = "5b1f0d6e8c4a4f7e9a2d3c6b7e8f9a01"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


VALID_SOURCE_TYPES = ("deb", "deb-src")
COMMENT_CHAR = "#"
STDIO_PATH = "-"
SOURCES_DIR = Path("/etc/apt/sources.list.d")
OS_RELEASE_PATH = Path("/etc/os-release")

_LINE_MATCHER = re.compile(
    r"""
    ^(?P<source_type>[^\s\[\]]+)
    \s*
    (?:\[(?P<options>[^\[\]]*)\])?
    (?P<params>(?:\s+[^\s\[\]]+)*)
    $
    """,
    re.VERBOSE,
)
_TRAILING_COMMENT_MATCHER = re.compile(r"\s+#.*$")


class Error(Exception):
    """Base class of most errors raised by this library."""

    def __repr__(self):
        """Represent the Error."""
        return f"<{type(self).__module__}.{type(self).__name__} {self.args}>"

    @property
    def name(self):
        """Return a string representation of the model plus class."""
        return f"<{type(self).__module__}.{type(self).__name__}>"

    @property
    def message(self):
        """Return the message passed as an argument."""
        return self.args[0]


class InvalidOptionNameError(Error):
    """Raised when an option name is not one of the names listed in sources.list(5)."""

    def __init__(self, name: str) -> None:
        super().__init__(f"This option name is invalid: {name}")
        self.option_name = name


class MalformedOptionError(Error):
    """Raised when an option is not in `key=value` form."""

    def __init__(self, option: str) -> None:
        super().__init__(f"This option is not in `key=value` format: {option}")
        self.option = option


class MalformedLineEntryError(Error):
    """Raised when a one-line-style source entry can not be parsed."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"This one-line-style source entry is malformed.\n\n{reason}")
        self.reason = reason


class UnknownLineOptionError(MalformedLineEntryError):
    """A one-line-style source entry names an option that is not known."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"This is not a valid option name: `{name}`.\n\n"
            "See the sources.list(5) man page for a list of valid options."
        )
        self.option_name = name


class NewSourceFileAlreadyExistsError(Error):
    """Raised when installing a source to a file which already exists."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__(
            f"This source file already exists: {path}. "
            "Choose to overwrite or append to it instead."
        )
        self.path = Path(path)


class StanzaNotFoundError(Error):
    """Raised when replacing a stanza which is no longer in its source file."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__(f"The source file no longer holds the stanza to replace: {path}")
        self.path = Path(path)


class ConvertOutFileAlreadyExistsError(Error):
    """Raised when the destination of a conversion already exists."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__(f"Cannot convert source file, destination already exists: {path}")
        self.path = Path(path)


class ConvertBackupAlreadyExistsError(Error):
    """Raised when the backup destination of a conversion already exists."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__(f"Cannot back up source file, backup already exists: {path}")
        self.path = Path(path)


class ConvertInFileNotFoundError(Error):
    """Raised when the file to convert does not exist."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__(f"Cannot convert source file, file does not exist: {path}")
        self.path = Path(path)


class PermissionDeniedError(Error):
    """Raised on any permission failure while reading or writing files."""

    def __init__(self, message: str = "You must run this as root") -> None:
        super().__init__(message)


class ConflictingKeyLocationsError(Error):
    """Raised when a signing key is given more than once for the same source."""

    def __init__(self) -> None:
        super().__init__(
            "A signing key was specified both as an option (`signed-by`) and as a key to "
            "install. Only one may be given."
        )


class CouldNotInferSuiteError(Error):
    """Raised when no suite was given and the release codename can not be found."""

    def __init__(self) -> None:
        super().__init__(
            "Could not infer the suite from the current distro version codename. "
            "Specify the suite explicitly."
        )


class KnownOptionName(Enum):
    """An option name listed in the sources.list(5) man page.

    The value of each member is its spelling in the deb822 format, and the order in which members
    are defined is the order in which options are written to a stanza.
    """

    RepolibName = "X-Repolib-Name"
    Enabled = "Enabled"
    Types = "Types"
    Uris = "URIs"
    Suites = "Suites"
    Components = "Components"
    SignedBy = "Signed-By"
    Trusted = "Trusted"
    Architectures = "Architectures"
    Languages = "Languages"
    Targets = "Targets"
    PDiffs = "PDiffs"
    ByHash = "By-Hash"
    AllowInsecure = "Allow-Insecure"
    AllowWeak = "Allow-Weak"
    AllowDowngradeToInsecure = "Allow-Downgrade-To-Insecure"
    CheckValidUntil = "Check-Valid-Until"
    ValidUntilMin = "Valid-Until-Min"
    ValidUntilMax = "Valid-Until-Max"

    @property
    def deb822(self) -> str:
        """Return the option name in deb822 syntax."""
        return self.value

    @classmethod
    def from_str(cls, name: str) -> KnownOptionName:
        """Look up an option name as it appears in either syntax, without regard for case.

        Raises:
            InvalidOptionNameError if the name is not known
        """
        try:
            return _OPTION_ALIASES[name.strip().lower()]
        except KeyError:
            raise InvalidOptionNameError(name) from None


_OPTION_ALIASES = {option.value.lower(): option for option in KnownOptionName}
# X-Repolib-Name is written by us, but never accepted as input.
del _OPTION_ALIASES["x-repolib-name"]
_OPTION_ALIASES.update(
    {
        "arch": KnownOptionName.Architectures,
        "lang": KnownOptionName.Languages,
        "target": KnownOptionName.Targets,
    }
)


@dataclass(frozen=True, order=True)
class CustomOptionName:
    """An option name given verbatim by the user."""

    name: str

    @property
    def deb822(self) -> str:
        """Return the option name in deb822 syntax."""
        return self.name


OptionName = Union[KnownOptionName, CustomOptionName]


class OptionValue:
    """The value of an option in a source entry."""

    def is_empty(self) -> bool:
        """Return whether this value should be left out of a source entry."""
        raise NotImplementedError

    def to_deb822(self) -> str:
        """Return the value encoded for a deb822 stanza."""
        raise NotImplementedError

    @staticmethod
    def from_tokens(tokens: Iterable[str]) -> OptionValue:
        """Build a value from raw tokens, collapsing a single token to a `TextValue`."""
        tokens = list(tokens)
        if len(tokens) == 1:
            return TextValue(tokens[0])
        return ListValue(tokens)

    @staticmethod
    def coerce(value: Union[OptionValue, str, bool, Iterable[str]]) -> OptionValue:
        """Wrap a plain Python value in the matching `OptionValue`."""
        if isinstance(value, OptionValue):
            return value
        if isinstance(value, bool):
            return BoolValue(value)
        if isinstance(value, str):
            return TextValue(value)
        return ListValue(value)


@dataclass(frozen=True)
class TextValue(OptionValue):
    """A free-form string value."""

    value: str

    def is_empty(self) -> bool:
        return not self.value.strip()

    def to_deb822(self) -> str:
        return self.value


@dataclass(frozen=True)
class ListValue(OptionValue):
    """A list of values, written space-separated."""

    values: tuple[str, ...]

    def __init__(self, values: Iterable[str]) -> None:
        object.__setattr__(self, "values", tuple(values))

    def is_empty(self) -> bool:
        return not self.values

    def to_deb822(self) -> str:
        return " ".join(self.values)


@dataclass(frozen=True)
class BoolValue(OptionValue):
    """A boolean value, written as `yes` or `no`."""

    value: bool

    def is_empty(self) -> bool:
        return False

    def to_deb822(self) -> str:
        return "yes" if self.value else "no"


@dataclass(frozen=True)
class MultilineValue(OptionValue):
    """A block of lines, such as an inlined ASCII-armored signing key.

    In deb822, a multi-line value starts on the line after the field name. Each line is indented
    by one space, and blank lines are written as a single `.`.
    """

    lines: tuple[str, ...]

    def __init__(self, lines: Iterable[str]) -> None:
        object.__setattr__(self, "lines", tuple(lines))

    def is_empty(self) -> bool:
        return not self.lines

    def to_deb822(self) -> str:
        encoded = "".join(f" {line}\n" if line.strip() else " .\n" for line in self.lines)
        return f"\n{encoded}"


class OptionMap:
    """A map of option names to their values.

    Options are only ever read back through `options`, which returns them in their canonical
    order: known options in the order of `KnownOptionName`, then custom options sorted by name.
    """

    def __init__(self, pairs: Iterable[tuple[OptionName, OptionValue]] = ()) -> None:
        self._options: dict[OptionName, OptionValue] = {}
        for name, value in pairs:
            self.insert(name, value)

    def __repr__(self):
        """Represent the option map."""
        return f"<{type(self).__module__}.{type(self).__name__}: {self.options()}>"

    def __eq__(self, other: object) -> bool:
        """Equality for comparison."""
        return isinstance(other, OptionMap) and self._options == other._options

    def __contains__(self, name: object) -> bool:
        """Return whether an option is set."""
        return name in self._options

    def __len__(self) -> int:
        """Return the number of options set."""
        return len(self._options)

    def get(self, name: OptionName) -> Optional[OptionValue]:
        """Return the value of an option, or None if it is not set."""
        return self._options.get(name)

    def insert(
        self, name: OptionName, value: Union[OptionValue, str, bool, Iterable[str]]
    ) -> None:
        """Insert an option, replacing any previous value.

        If the value is empty, then this does nothing.
        """
        option_value = OptionValue.coerce(value)
        if option_value.is_empty():
            return
        self._options[name] = option_value

    def insert_or_else(
        self,
        name: OptionName,
        value: Union[OptionValue, str, Iterable[str]],
        default: Callable[[], Union[OptionValue, str, Iterable[str]]],
    ) -> None:
        """Insert an option, or the result of calling `default` if the value is empty."""
        option_value = OptionValue.coerce(value)
        if option_value.is_empty():
            option_value = OptionValue.coerce(default())
        self.insert(name, option_value)

    def insert_key(self, value: OptionValue) -> None:
        """Insert the signing key for this source.

        Args:
            value: the path of a keyring file, or an inlined key

        Raises:
            ConflictingKeyLocationsError if a signing key is already set
        """
        if KnownOptionName.SignedBy in self._options:
            raise ConflictingKeyLocationsError()
        self.insert(KnownOptionName.SignedBy, value)

    def options(self) -> list[tuple[OptionName, OptionValue]]:
        """Return the options in this map in their canonical order."""
        known = [
            (name, self._options[name]) for name in KnownOptionName if name in self._options
        ]
        custom = sorted(
            (
                (name, value)
                for name, value in self._options.items()
                if isinstance(name, CustomOptionName)
            ),
            key=lambda pair: pair[0].name,
        )
        return known + custom


def deb822_pairs(options: OptionMap) -> list[tuple[str, str]]:
    """Return the deb822 field names and encoded values of a source entry, in order."""
    return [(name.deb822, value.to_deb822()) for name, value in options.options()]


def format_stanza(options: OptionMap) -> str:
    """Render a source entry as a deb822 stanza."""
    lines = []
    for name, value in options.options():
        if isinstance(value, MultilineValue):
            lines.append(f"{name.deb822}:{value.to_deb822()}")
        else:
            lines.append(f"{name.deb822}: {value.to_deb822()}\n")
    return "".join(lines)


def format_comment(text: str) -> str:
    """Render a comment line for a deb822 file."""
    return f"{COMMENT_CHAR} {text}\n"


def parse_custom_option(
    option: str, force_literal: bool = False
) -> tuple[OptionName, OptionValue]:
    """Parse an option given in `key=value` format.

    Args:
        option: the option, where a value containing commas is a list of values
        force_literal: keep the key as-is instead of requiring a known option name

    Raises:
        MalformedOptionError if the option is not in `key=value` format
        InvalidOptionNameError if the key is not known and `force_literal` is not set
    """
    key, sep, value = option.strip().partition("=")
    if not sep:
        raise MalformedOptionError(option)

    if force_literal:
        name: OptionName = CustomOptionName(key)
    else:
        name = KnownOptionName.from_str(key)

    return name, OptionValue.from_tokens(value.split(","))


def _parse_option_list(options: str) -> list[tuple[KnownOptionName, OptionValue]]:
    """Parse the bracketed option list of a one-line-style source entry."""
    parsed = []
    for option in options.split():
        key, sep, value = option.partition("=")
        if not sep or not key or not value:
            raise MalformedLineEntryError(f"This option is not in `key=value` format: `{option}`.")
        try:
            name = KnownOptionName.from_str(key)
        except InvalidOptionNameError:
            raise UnknownLineOptionError(key) from None
        values = value.split(",")
        if not all(values):
            raise MalformedLineEntryError(f"This option has an empty value: `{option}`.")
        parsed.append((name, OptionValue.from_tokens(values)))
    return parsed


def parse_line_entry(entry: str) -> OptionMap:
    """Parse a one-line-style source entry.

    The entry has the form `type [option=value ...] uri suite [component ...]`. `Enabled` is not
    set on the returned map; whether the entry is enabled depends on where it came from.

    Args:
        entry: a single line such as `deb [arch=amd64] https://example.com noble main`

    Raises:
        MalformedLineEntryError if the entry can not be parsed
    """
    line = _TRAILING_COMMENT_MATCHER.sub("", entry.strip())
    match = _LINE_MATCHER.match(line)
    if match is None:
        raise MalformedLineEntryError(
            "The entry must have the form `type [option=value ...] uri suite [component ...]`."
        )

    source_type = match.group("source_type")
    if source_type not in VALID_SOURCE_TYPES:
        raise MalformedLineEntryError("The entry must start with `deb` or `deb-src`.")

    params = match.group("params").split()
    if len(params) < 3:
        raise MalformedLineEntryError(
            "The entry must include a URI, a suite and at least one component."
        )
    uri, suite, *components = params

    option_map = OptionMap()
    option_map.insert(KnownOptionName.Types, source_type)
    option_map.insert(KnownOptionName.Uris, uri)
    option_map.insert(KnownOptionName.Suites, suite)
    if components:
        option_map.insert(KnownOptionName.Components, OptionValue.from_tokens(components))

    for name, value in _parse_option_list(match.group("options") or ""):
        option_map.insert(name, value)

    return option_map


@dataclass
class ConvertedEntry:
    """A source entry from a one-line-style file, enabled or commented out."""

    options: OptionMap

    @property
    def enabled(self) -> bool:
        """Return whether the entry is enabled."""
        return self.options.get(KnownOptionName.Enabled) == BoolValue(True)


@dataclass
class ConvertedComment:
    """A comment from a one-line-style file."""

    text: str


ConvertedLine = Union[ConvertedEntry, ConvertedComment]


def parse_line_file(
    lines: Iterable[str], skip_comments: bool = False, skip_disabled: bool = False
) -> list[ConvertedLine]:
    """Parse the lines of a one-line-style source file.

    Comments are kept unless `skip_comments` is set. Entries that are commented out are kept as
    disabled entries unless `skip_disabled` is set. Blank lines are dropped.

    Raises:
        MalformedLineEntryError if a line which is not commented out can not be parsed
    """
    converted: list[ConvertedLine] = []
    for n, line in enumerate(lines, start=1):  # 1 indexed line numbers
        trimmed = line.strip()
        if not trimmed:
            continue

        if not trimmed.startswith(COMMENT_CHAR):
            options = parse_line_entry(trimmed)
            options.insert(KnownOptionName.Enabled, True)
            converted.append(ConvertedEntry(options))
            continue

        _, _, commented = trimmed.partition(COMMENT_CHAR)
        commented = commented.strip()
        try:
            options = parse_line_entry(commented)
        except MalformedLineEntryError:
            # Not a commented-out entry, so it's an ordinary comment.
            if skip_comments:
                logger.debug("skipping comment on line %d", n)
                continue
            converted.append(ConvertedComment(commented))
            continue

        if skip_disabled:
            logger.debug("skipping disabled entry on line %d", n)
            continue
        options.insert(KnownOptionName.Enabled, False)
        converted.append(ConvertedEntry(options))

    return converted


def get_version_codename() -> str:
    """Return the codename of the running distro release, such as `noble`.

    Tries `lsb_release` first, then falls back to reading `/etc/os-release`.

    Raises:
        CouldNotInferSuiteError if the codename can not be found
    """
    try:
        output = check_output(
            ["lsb_release", "--short", "--codename"], stderr=PIPE, universal_newlines=True
        )
    except FileNotFoundError:
        logger.debug("lsb_release is not installed, reading %s", OS_RELEASE_PATH)
    except CalledProcessError as e:
        logger.debug("lsb_release failed, reading %s: %s", OS_RELEASE_PATH, e.stderr)
    else:
        codename = output.strip()
        if codename:
            return codename

    return _codename_from_os_release(OS_RELEASE_PATH)


def _codename_from_os_release(path: Path) -> str:
    """Read VERSION_CODENAME from an os-release file."""
    try:
        with open(path) as f:
            for line in f:
                key, sep, value = line.partition("=")
                if sep and key.strip() == "VERSION_CODENAME":
                    codename = value.strip().strip("\"'")
                    if codename:
                        return codename
    except FileNotFoundError:
        logger.debug("%s does not exist", path)
    raise CouldNotInferSuiteError()


class SourceFileKind(Enum):
    """A kind of source file, by its file extension."""

    OneLine = "list"
    Deb822 = "sources"


class SourceFile:
    """The location of a source file.

    Either a file named after a source in the apt sources directory, or an explicit path. The
    path `-` stands for standard input or output.
    """

    def __init__(self, path: Union[str, Path], kind: SourceFileKind, installed: bool = False):
        self._path = Path(path)
        self._kind = kind
        self._installed = installed

    def __repr__(self):
        """Represent the source file."""
        return f"<{self.__module__}.{type(self).__name__}: {self.__dict__}>"

    @classmethod
    def installed(
        cls, name: str, kind: SourceFileKind, directory: Optional[Union[str, Path]] = None
    ) -> SourceFile:
        """Return the file for a named source in the apt sources directory."""
        directory = Path(directory) if directory is not None else SOURCES_DIR
        return cls(directory / f"{name}.{kind.value}", kind, installed=True)

    @classmethod
    def at(cls, path: Union[str, Path], kind: SourceFileKind) -> SourceFile:
        """Return the file at an explicit path."""
        return cls(path, kind)

    @property
    def path(self) -> Path:
        """Return the path of this source file."""
        return self._path

    @property
    def kind(self) -> SourceFileKind:
        """Return whether this is a one-line-style or deb822 file."""
        return self._kind

    @property
    def is_installed(self) -> bool:
        """Return whether this file was named after a source in the apt sources directory."""
        return self._installed

    @property
    def is_stdio(self) -> bool:
        """Return whether this is standard input or output rather than a real file."""
        return str(self._path) == STDIO_PATH


class OverwriteAction(Enum):
    """What to do if a source file already exists."""

    Overwrite = "overwrite"
    Append = "append"
    Fail = "fail"


class InstallPlan(Enum):
    """What will happen when a source entry is installed.

    The file may be created or removed between making the plan and installing, so the plan is
    only a report; installing checks again.
    """

    Create = "create"
    Overwrite = "overwrite"
    Append = "append"

    @classmethod
    def for_path(cls, path: Union[str, Path], action: OverwriteAction) -> InstallPlan:
        """Return what installing to `path` with `action` will do.

        Raises:
            NewSourceFileAlreadyExistsError if the file exists and `action` is `Fail`
        """
        if not os.path.exists(path):
            return cls.Create
        if action is OverwriteAction.Overwrite:
            return cls.Overwrite
        if action is OverwriteAction.Append:
            return cls.Append
        raise NewSourceFileAlreadyExistsError(path)


_OPEN_MODES = {
    OverwriteAction.Overwrite: "w+",
    OverwriteAction.Append: "a+",
    OverwriteAction.Fail: "x+",
}


def _open_source_file(path: Path, action: OverwriteAction) -> TextIO:
    """Open a source file for writing, creating it if it does not exist."""
    try:
        return open(path, _OPEN_MODES[action], encoding="utf-8")
    except FileExistsError:
        raise NewSourceFileAlreadyExistsError(path) from None
    except PermissionError:
        raise PermissionDeniedError() from None


def _stanza_separator(existing: str) -> str:
    """Return what to write before a new stanza so that it follows one blank line."""
    if not existing:
        return ""
    trimmed = existing.rstrip(" \t")
    if trimmed != existing and (not trimmed or trimmed.endswith("\n")):
        # An unterminated whitespace-only line becomes the blank line once ended.
        if trimmed.endswith("\n\n"):
            logger.warning("source file ends with more than one blank line")
        return "\n"
    if not existing.endswith("\n"):
        return "\n\n"
    last_line = existing.splitlines()[-1]
    if last_line.strip():
        return "\n"
    if existing.endswith("\n\n\n"):
        logger.warning("source file ends with more than one blank line")
    return ""


class SourceEntry:
    """A repository source entry and the file it is installed to.

    The signing key, if any, is acquired and added to the options by `install_key` before the
    entry is installed.
    """

    def __init__(
        self, file: SourceFile, options: OptionMap, key: Optional[PendingKey] = None
    ) -> None:
        self._file = file
        self._options = options
        self._key = key

    def __repr__(self):
        """Represent the source entry."""
        return f"<{self.__module__}.{type(self).__name__}: {self.__dict__}>"

    @property
    def path(self) -> Path:
        """Return the path this entry will be installed to."""
        return self._file.path

    @property
    def options(self) -> OptionMap:
        """Return the options of this entry."""
        return self._options

    @classmethod
    def from_options(
        cls,
        name: str,
        *,
        uris: Iterable[str],
        types: Iterable[str] = ("deb",),
        suites: Iterable[str] = (),
        components: Iterable[str] = (),
        architectures: Iterable[str] = (),
        languages: Iterable[str] = (),
        options: Iterable[tuple[OptionName, OptionValue]] = (),
        disabled: bool = False,
        description: Optional[str] = None,
        key: Optional[PendingKey] = None,
        directory: Optional[Union[str, Path]] = None,
    ) -> SourceEntry:
        """Build a source entry from explicit fields.

        If no suites are given, the codename of the running release is used.

        Args:
            name: the name of the source, used for the file name
            uris: the repository URIs
            types: `deb` and/or `deb-src`
            suites: the repository suites
            components: the repository components
            architectures: the architectures to download indexes for
            languages: the languages to download translations for
            options: any other (name, value) pairs, as returned by `parse_custom_option`
            disabled: write the entry with `Enabled: no`
            description: a human-readable description of the source
            key: a signing key to acquire when the entry is installed
            directory: the apt sources directory, defaulting to `SOURCES_DIR`

        Raises:
            CouldNotInferSuiteError if no suites are given and the codename is not known
        """
        option_map = OptionMap(options)
        option_map.insert(KnownOptionName.Uris, list(uris))
        option_map.insert(KnownOptionName.Types, list(types))
        option_map.insert(KnownOptionName.Components, list(components))
        option_map.insert(KnownOptionName.Architectures, list(architectures))
        option_map.insert(KnownOptionName.Languages, list(languages))
        option_map.insert(KnownOptionName.Enabled, not disabled)
        option_map.insert_or_else(KnownOptionName.Suites, list(suites), get_version_codename)
        if description:
            option_map.insert(KnownOptionName.RepolibName, description)

        return cls(SourceFile.installed(name, SourceFileKind.Deb822, directory), option_map, key)

    @classmethod
    def from_line(
        cls,
        name: str,
        line: str,
        *,
        disabled: bool = False,
        description: Optional[str] = None,
        key: Optional[PendingKey] = None,
        directory: Optional[Union[str, Path]] = None,
    ) -> SourceEntry:
        """Build a source entry from a one-line-style `sources.list` entry.

        Raises:
            MalformedLineEntryError if the line can not be parsed
        """
        option_map = parse_line_entry(line)
        option_map.insert(KnownOptionName.Enabled, not disabled)
        if description:
            option_map.insert(KnownOptionName.RepolibName, description)

        return cls(SourceFile.installed(name, SourceFileKind.Deb822, directory), option_map, key)

    def install_key(self) -> None:
        """Acquire the signing key for this entry, if any, and add it to the options.

        Raises:
            ConflictingKeyLocationsError if the options already have a `Signed-By` value
        """
        if self._key is None:
            return
        # check before fetching anything
        if KnownOptionName.SignedBy in self._options:
            raise ConflictingKeyLocationsError()
        self._options.insert_key(self._key.resolve())

    def render(self) -> str:
        """Return this entry as a deb822 stanza."""
        return format_stanza(self._options)

    def install_to(self, file: IO[str], action: OverwriteAction) -> None:
        """Write this entry to an open file.

        When appending, a blank line is written first unless the file is empty or already ends
        with one.
        """
        if action is OverwriteAction.Append:
            file.seek(0)
            existing = file.read()
            file.seek(0, io.SEEK_END)
            file.write(_stanza_separator(existing))
        file.write(self.render())

    def install(self, action: OverwriteAction) -> InstallPlan:
        """Install this entry to its file in deb822 format.

        `Overwrite` replaces the whole file with this one entry. `Append` keeps whatever the file
        already has. `Fail` only writes a new file.

        Returns:
            what was done to the file

        Raises:
            NewSourceFileAlreadyExistsError if the file exists and `action` is `Fail`
            PermissionDeniedError if the file can not be opened for writing
        """
        path = self.path
        plan = InstallPlan.for_path(path, action)
        with _open_source_file(path, action) as f:
            self.install_to(f, action)
        logger.info("installed apt source to %s (%s)", path, plan.value)
        return plan

    def replace_stanza(self, previous: str) -> InstallPlan:
        """Replace a stanza installed earlier to this entry's file with this entry.

        The rest of the file is kept as it is. This is how an entry installed with any
        `OverwriteAction` is updated in place.

        Args:
            previous: the stanza exactly as it was written, as returned by `render`

        Raises:
            StanzaNotFoundError if the file does not hold `previous`
            PermissionDeniedError if the file can not be opened for writing
        """
        path = self.path
        try:
            with open(path, "r+", encoding="utf-8") as f:
                existing = f.read()
                if previous not in existing:
                    raise StanzaNotFoundError(path)
                f.seek(0)
                f.write(existing.replace(previous, self.render(), 1))
                f.truncate()
        except FileNotFoundError:
            raise StanzaNotFoundError(path) from None
        except PermissionError:
            raise PermissionDeniedError() from None
        logger.info("replaced apt source stanza in %s", path)
        return InstallPlan.Overwrite


@dataclass(frozen=True)
class Backup:
    """Back up the original file before converting it.

    Without a path, the backup goes next to the original with a `.bak` suffix.
    """

    path: Optional[Path] = field(default=None)

    SUFFIX = ".bak"

    def path_for(self, original: Path) -> Path:
        """Return where to back up `original` to."""
        if self.path is not None:
            return Path(self.path)
        return original.with_name(original.name + self.SUFFIX)


class EntryConverter:
    """Convert a one-line-style source file to a deb822 source file."""

    def __init__(
        self,
        in_file: SourceFile,
        out_file: SourceFile,
        *,
        backup: Optional[Backup] = None,
        skip_comments: bool = False,
        skip_disabled: bool = False,
        remove_original: bool = False,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
    ) -> None:
        if backup is not None and in_file.is_stdio:
            raise ValueError("Cannot back up a source file read from standard input")
        self._in_file = in_file
        self._out_file = out_file
        self._backup = backup
        self._skip_comments = skip_comments
        self._skip_disabled = skip_disabled
        self._should_remove_original = remove_original and not in_file.is_stdio
        self._stdin = stdin
        self._stdout = stdout

    @classmethod
    def from_name(
        cls,
        name: str,
        *,
        backup: Optional[Backup] = None,
        skip_comments: bool = False,
        skip_disabled: bool = False,
        directory: Optional[Union[str, Path]] = None,
    ) -> EntryConverter:
        """Convert `<name>.list` in the apt sources directory to `<name>.sources`.

        The original file is removed once it has been converted.
        """
        return cls(
            SourceFile.installed(name, SourceFileKind.OneLine, directory),
            SourceFile.installed(name, SourceFileKind.Deb822, directory),
            backup=backup,
            skip_comments=skip_comments,
            skip_disabled=skip_disabled,
            remove_original=True,
        )

    @classmethod
    def from_paths(
        cls,
        in_path: Union[str, Path],
        out_path: Union[str, Path],
        *,
        backup: Optional[Backup] = None,
        skip_comments: bool = False,
        skip_disabled: bool = False,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
    ) -> EntryConverter:
        """Convert the file at `in_path` to a new file at `out_path`.

        Either path may be `-` for standard input or output. The original file is kept.
        """
        return cls(
            SourceFile.at(in_path, SourceFileKind.OneLine),
            SourceFile.at(out_path, SourceFileKind.Deb822),
            backup=backup,
            skip_comments=skip_comments,
            skip_disabled=skip_disabled,
            stdin=stdin,
            stdout=stdout,
        )

    def read(self) -> list[ConvertedLine]:
        """Parse the original file.

        Raises:
            ConvertInFileNotFoundError if the original file does not exist
            MalformedLineEntryError if an entry in the file can not be parsed
        """
        if self._in_file.is_stdio:
            return parse_line_file(
                self._stdin or sys.stdin, self._skip_comments, self._skip_disabled
            )

        path = self._in_file.path
        try:
            with open(path, encoding="utf-8") as f:
                lines = parse_line_file(f, self._skip_comments, self._skip_disabled)
        except FileNotFoundError:
            raise ConvertInFileNotFoundError(path) from None
        except PermissionError:
            raise PermissionDeniedError() from None

        logger.debug("parsed %d lines from %s", len(lines), path)
        return lines

    def _backup_original(self) -> None:
        """Copy the original file to its backup path."""
        if self._backup is None:
            return

        original = self._in_file.path
        backup_path = self._backup.path_for(original)
        try:
            with open(original, "rb") as src, open(backup_path, "xb") as dest:
                shutil.copyfileobj(src, dest)
        except FileExistsError:
            raise ConvertBackupAlreadyExistsError(backup_path) from None
        except FileNotFoundError:
            raise ConvertInFileNotFoundError(original) from None
        except PermissionError:
            raise PermissionDeniedError() from None
        logger.info("backed up %s to %s", original, backup_path)

    def _open_dest_file(self) -> TextIO:
        """Open the destination file, which must not already exist."""
        path = self._out_file.path
        try:
            return open(path, "x+", encoding="utf-8")
        except FileExistsError:
            raise ConvertOutFileAlreadyExistsError(path) from None
        except PermissionError:
            raise PermissionDeniedError() from None

    def _write(self, lines: list[ConvertedLine], file: IO[str]) -> None:
        for line in lines:
            if isinstance(line, ConvertedComment):
                file.write(format_comment(line.text))
            else:
                SourceEntry(self._out_file, line.options).install_to(file, OverwriteAction.Append)

    def _remove_original(self) -> None:
        """Delete the original file."""
        if not self._should_remove_original:
            return
        path = self._in_file.path
        try:
            os.remove(path)
        except PermissionError:
            raise PermissionDeniedError() from None
        logger.info("removed original source file %s", path)

    def convert(self) -> list[ConvertedLine]:
        """Convert the source file.

        The original is parsed first, so nothing is written if it can not be parsed. Then it is
        backed up (if requested), the deb822 file is written, and the original is removed (if
        it was named rather than given as a path).

        Returns:
            the entries and comments that were written, in order

        Raises:
            ConvertInFileNotFoundError if the original file does not exist
            ConvertBackupAlreadyExistsError if the backup file already exists
            ConvertOutFileAlreadyExistsError if the destination file already exists
            PermissionDeniedError if any file can not be read, written or removed
            MalformedLineEntryError if an entry in the original can not be parsed
        """
        lines = self.read()
        self._backup_original()

        if self._out_file.is_stdio:
            buffer = io.StringIO()
            self._write(lines, buffer)
            (self._stdout or sys.stdout).write(buffer.getvalue())
        else:
            with self._open_dest_file() as f:
                self._write(lines, f)
            logger.info("wrote converted source file %s", self._out_file.path)

        self._remove_original()
        return lines
