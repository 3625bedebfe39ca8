# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import subprocess
from unittest import mock

import pytest
from charms.apt_sources.v0 import sources

OS_RELEASE = """PRETTY_NAME="Ubuntu 24.04 LTS"
NAME="Ubuntu"
VERSION_ID="24.04"
VERSION="24.04 LTS (Noble Numbat)"
VERSION_CODENAME=noble
ID=ubuntu
ID_LIKE=debian
UBUNTU_CODENAME=noble
"""


@pytest.fixture
def os_release(tmp_path):
    path = tmp_path / "os-release"
    with mock.patch.object(sources, "OS_RELEASE_PATH", path):
        yield path


def test_codename_from_lsb_release(os_release):
    with mock.patch("charms.apt_sources.v0.sources.check_output", return_value="jammy\n") as lsb:
        assert sources.get_version_codename() == "jammy"

    lsb.assert_called_once_with(
        ["lsb_release", "--short", "--codename"],
        stderr=subprocess.PIPE,
        universal_newlines=True,
    )


@pytest.mark.parametrize(
    "lsb_release",
    [
        mock.MagicMock(side_effect=FileNotFoundError),
        mock.MagicMock(side_effect=subprocess.CalledProcessError(1, [], stderr="error")),
        mock.MagicMock(return_value="\n"),
    ],
)
def test_codename_from_os_release(os_release, lsb_release):
    os_release.write_text(OS_RELEASE)
    with mock.patch("charms.apt_sources.v0.sources.check_output", new=lsb_release):
        assert sources.get_version_codename() == "noble"


def test_codename_quoted(os_release):
    os_release.write_text('NAME="Debian GNU/Linux"\nVERSION_CODENAME="bookworm"\n')
    with mock.patch(
        "charms.apt_sources.v0.sources.check_output", side_effect=FileNotFoundError
    ):
        assert sources.get_version_codename() == "bookworm"


@pytest.mark.parametrize("contents", [None, 'NAME="Debian GNU/Linux"\n', "VERSION_CODENAME=\n"])
def test_codename_not_found(os_release, contents):
    if contents is not None:
        os_release.write_text(contents)

    with mock.patch(
        "charms.apt_sources.v0.sources.check_output", side_effect=FileNotFoundError
    ):
        with pytest.raises(sources.CouldNotInferSuiteError):
            sources.get_version_codename()
