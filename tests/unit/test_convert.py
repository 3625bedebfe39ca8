# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import io
import os
from pathlib import Path
from unittest import mock

from charms.apt_sources.v0 import sources
from pyfakefs.fake_filesystem_unittest import TestCase

example_list = """# Main archive
deb [arch=amd64] http://archive.ubuntu.com/ubuntu noble main restricted
# deb-src http://archive.ubuntu.com/ubuntu noble main restricted

deb http://archive.ubuntu.com/ubuntu noble-updates main
"""

example_sources = """# Main archive

Enabled: yes
Types: deb
URIs: http://archive.ubuntu.com/ubuntu
Suites: noble
Components: main restricted
Architectures: amd64

Enabled: no
Types: deb-src
URIs: http://archive.ubuntu.com/ubuntu
Suites: noble
Components: main restricted

Enabled: yes
Types: deb
URIs: http://archive.ubuntu.com/ubuntu
Suites: noble-updates
Components: main
"""

example_sources_without_disabled = """# Main archive

Enabled: yes
Types: deb
URIs: http://archive.ubuntu.com/ubuntu
Suites: noble
Components: main restricted
Architectures: amd64

Enabled: yes
Types: deb
URIs: http://archive.ubuntu.com/ubuntu
Suites: noble-updates
Components: main
"""

example_sources_without_comments = """Enabled: yes
Types: deb
URIs: http://archive.ubuntu.com/ubuntu
Suites: noble
Components: main restricted
Architectures: amd64

Enabled: no
Types: deb-src
URIs: http://archive.ubuntu.com/ubuntu
Suites: noble
Components: main restricted

Enabled: yes
Types: deb
URIs: http://archive.ubuntu.com/ubuntu
Suites: noble-updates
Components: main
"""

SOURCES_DIR = "/etc/apt/sources.list.d"
LIST_PATH = f"{SOURCES_DIR}/example.list"
SOURCES_PATH = f"{SOURCES_DIR}/example.sources"


class TestEntryConverter(TestCase):
    def setUp(self):
        self.setUpPyfakefs()
        self.fs.create_file(LIST_PATH, contents=example_list)

    def read(self, path):
        with open(path) as f:
            return f.read()

    def test_convert_by_name(self):
        lines = sources.EntryConverter.from_name("example").convert()

        self.assertEqual(len(lines), 4)
        self.assertEqual(self.read(SOURCES_PATH), example_sources)
        self.assertFalse(os.path.exists(LIST_PATH))

    def test_convert_skip_disabled(self):
        sources.EntryConverter.from_name("example", skip_disabled=True).convert()
        self.assertEqual(self.read(SOURCES_PATH), example_sources_without_disabled)

    def test_convert_skip_comments(self):
        sources.EntryConverter.from_name("example", skip_comments=True).convert()
        self.assertEqual(self.read(SOURCES_PATH), example_sources_without_comments)

    def test_convert_with_backup(self):
        sources.EntryConverter.from_name("example", backup=sources.Backup()).convert()

        self.assertEqual(self.read(f"{LIST_PATH}.bak"), example_list)
        self.assertFalse(os.path.exists(LIST_PATH))

    def test_convert_with_backup_to_path(self):
        backup = sources.Backup(Path("/var/backups/example.list.orig"))
        self.fs.create_dir("/var/backups")
        sources.EntryConverter.from_name("example", backup=backup).convert()

        self.assertEqual(self.read("/var/backups/example.list.orig"), example_list)

    def test_convert_backup_exists(self):
        self.fs.create_file(f"{LIST_PATH}.bak", contents="old backup")

        with self.assertRaises(sources.ConvertBackupAlreadyExistsError) as ctx:
            sources.EntryConverter.from_name("example", backup=sources.Backup()).convert()

        self.assertEqual(str(ctx.exception.path), f"{LIST_PATH}.bak")
        self.assertEqual(self.read(f"{LIST_PATH}.bak"), "old backup")
        self.assertFalse(os.path.exists(SOURCES_PATH))
        self.assertEqual(self.read(LIST_PATH), example_list)

    def test_convert_destination_exists(self):
        self.fs.create_file(SOURCES_PATH, contents="Types: deb\n")

        with self.assertRaises(sources.ConvertOutFileAlreadyExistsError) as ctx:
            sources.EntryConverter.from_name("example").convert()

        self.assertEqual(str(ctx.exception.path), SOURCES_PATH)
        self.assertEqual(self.read(SOURCES_PATH), "Types: deb\n")
        self.assertEqual(self.read(LIST_PATH), example_list)

    def test_convert_not_found(self):
        with self.assertRaises(sources.ConvertInFileNotFoundError) as ctx:
            sources.EntryConverter.from_name("missing").convert()

        self.assertEqual(str(ctx.exception.path), f"{SOURCES_DIR}/missing.list")
        self.assertEqual(
            "<charms.apt_sources.v0.sources.ConvertInFileNotFoundError>", ctx.exception.name
        )

    def test_convert_malformed_writes_nothing(self):
        self.fs.create_file(f"{SOURCES_DIR}/bad.list", contents="dontload http://example.com\n")

        with self.assertRaises(sources.MalformedLineEntryError):
            sources.EntryConverter.from_name("bad", backup=sources.Backup()).convert()

        self.assertFalse(os.path.exists(f"{SOURCES_DIR}/bad.sources"))
        self.assertFalse(os.path.exists(f"{SOURCES_DIR}/bad.list.bak"))

    def test_convert_permission_denied(self):
        with mock.patch.object(sources, "open", create=True, side_effect=PermissionError):
            with self.assertRaises(sources.PermissionDeniedError):
                sources.EntryConverter.from_name("example").convert()

    def test_convert_remove_permission_denied(self):
        with mock.patch.object(sources.os, "remove", side_effect=PermissionError):
            with self.assertRaises(sources.PermissionDeniedError):
                sources.EntryConverter.from_name("example").convert()

    def test_convert_in_other_directory(self):
        self.fs.create_file("/tmp/apt/example.list", contents=example_list)
        sources.EntryConverter.from_name("example", directory="/tmp/apt").convert()

        self.assertEqual(self.read("/tmp/apt/example.sources"), example_sources)
        self.assertTrue(os.path.exists(LIST_PATH))

    def test_convert_paths_keeps_original(self):
        sources.EntryConverter.from_paths(LIST_PATH, "/tmp/example.sources").convert()

        self.assertEqual(self.read("/tmp/example.sources"), example_sources)
        self.assertEqual(self.read(LIST_PATH), example_list)

    def test_convert_to_stdout(self):
        stdout = io.StringIO()
        sources.EntryConverter.from_paths(LIST_PATH, "-", stdout=stdout).convert()

        self.assertEqual(stdout.getvalue(), example_sources)
        self.assertEqual(self.read(LIST_PATH), example_list)
        self.assertFalse(os.path.exists("-"))

    def test_convert_from_stdin(self):
        stdin = io.StringIO(example_list)
        sources.EntryConverter.from_paths("-", "/tmp/example.sources", stdin=stdin).convert()

        self.assertEqual(self.read("/tmp/example.sources"), example_sources)

    def test_convert_stdin_backup_rejected(self):
        with self.assertRaises(ValueError):
            sources.EntryConverter.from_paths("-", "-", backup=sources.Backup())
