#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.


"""A charm which declares an apt source in the deb822 format."""

import logging
from pathlib import Path
from typing import Optional

from charms.apt_sources.v0 import keys, sources
from ops.charm import ActionEvent, CharmBase, ConfigChangedEvent
from ops.framework import StoredState
from ops.main import main
from ops.model import ActiveStatus, BlockedStatus

logger = logging.getLogger(__name__)


class AptSourcesCharm(CharmBase):
    """Install an apt source from charm config, and convert one-line-style source files."""

    _stored = StoredState()

    def __init__(self, *args):
        super().__init__(*args)
        self._stored.set_default(path="", stanza="", settings={})
        self.framework.observe(self.on.config_changed, self._on_config_changed)
        self.framework.observe(self.on.convert_action, self._on_convert_action)
        self.framework.observe(self.on.render_action, self._on_render_action)

    def _on_config_changed(self, _: ConfigChangedEvent) -> None:
        name = self.config.get("name")
        if not name:
            self.unit.status = BlockedStatus("set the `name` config option")
            return

        settings = dict(self.config)
        installed = self._installed_stanza()
        if installed is not None and dict(self._stored.settings) == settings:
            self.unit.status = ActiveStatus(f"unchanged: {self._stored.path}")
            return

        try:
            action = self._overwrite_action()
            entry = self._entry_from_config(name, with_key=True)
            previous = installed if self._stored.path == str(entry.path) else None
            if previous is None:
                # fails on an existing file before any key is fetched
                sources.InstallPlan.for_path(entry.path, action)
            entry.install_key()
            if previous is None:
                plan = entry.install(action)
            else:
                plan = entry.replace_stanza(previous)
        except sources.Error as e:
            logger.error("failed to install apt source %s: %s", name, e.message)
            self.unit.status = BlockedStatus(e.message)
            return

        self._stored.path = str(entry.path)
        self._stored.stanza = entry.render()
        self._stored.settings = settings
        self.unit.status = ActiveStatus(f"{plan.value}: {entry.path}")

    def _installed_stanza(self) -> Optional[str]:
        """Return the stanza this charm last installed, if its file still holds it."""
        if not self._stored.path:
            return None
        try:
            contents = Path(self._stored.path).read_text()
        except FileNotFoundError:
            return None
        if self._stored.stanza not in contents:
            return None
        return self._stored.stanza

    def _on_render_action(self, event: ActionEvent) -> None:
        """Show the stanza the current config would install, without writing anything."""
        name = self.config.get("name")
        if not name:
            event.fail("set the `name` config option")
            return

        try:
            action = self._overwrite_action()
            entry = self._entry_from_config(name, with_key=False)
            plan = sources.InstallPlan.for_path(entry.path, action)
        except sources.Error as e:
            event.fail(e.message)
            return

        event.set_results({"path": str(entry.path), "plan": plan.value, "stanza": entry.render()})

    def _on_convert_action(self, event: ActionEvent) -> None:
        name = event.params["name"]
        backup = None
        if event.params.get("backup-to"):
            backup = sources.Backup(event.params["backup-to"])
        elif event.params.get("backup"):
            backup = sources.Backup()

        converter = sources.EntryConverter.from_name(
            name,
            backup=backup,
            skip_comments=event.params.get("skip-comments", False),
            skip_disabled=event.params.get("skip-disabled", False),
        )
        try:
            lines = converter.convert()
        except sources.Error as e:
            logger.error("failed to convert apt source %s: %s", name, e.message)
            event.fail(e.message)
            return

        entries = [line for line in lines if isinstance(line, sources.ConvertedEntry)]
        event.set_results(
            {
                "entries": len(entries),
                "disabled": len([entry for entry in entries if not entry.enabled]),
                "comments": len(lines) - len(entries),
            }
        )

    def _overwrite_action(self) -> sources.OverwriteAction:
        policy = self.config.get("overwrite-policy", "fail")
        try:
            return sources.OverwriteAction(policy)
        except ValueError:
            raise InvalidConfigError(
                f"invalid overwrite-policy {policy!r}: use overwrite, append or fail"
            ) from None

    def _entry_from_config(self, name: str, with_key: bool) -> sources.SourceEntry:
        """Build the source entry described by the charm config."""
        force_literal = self.config.get("force-literal-options", False)
        options = [
            sources.parse_custom_option(option, force_literal)
            for option in self.config.get("options", "").split()
        ]
        disabled = self.config.get("disabled", False)
        description = self.config.get("description") or None
        key = self._pending_key(name) if with_key else None

        line = self.config.get("line", "").strip()
        if line:
            entry = sources.SourceEntry.from_line(
                name, line, disabled=disabled, description=description, key=key
            )
            for option_name, value in options:
                entry.options.insert(option_name, value)
            return entry

        uris = self.config.get("uris", "").split()
        if not uris:
            raise InvalidConfigError("set either the `line` or the `uris` config option")
        return sources.SourceEntry.from_options(
            name,
            uris=uris,
            types=self.config.get("types", "deb").split(),
            suites=self.config.get("suites", "").split(),
            components=self.config.get("components", "").split(),
            architectures=self.config.get("architectures", "").split(),
            options=options,
            disabled=disabled,
            description=description,
            key=key,
        )

    def _pending_key(self, name: str):
        location = self.config.get("key", "").strip()
        if not location:
            return None

        source = keys.key_source_from_location(location, self.config.get("keyserver") or None)
        if self.config.get("inline-key", False):
            destination = keys.InlineKeyDestination()
        else:
            destination = keys.FileKeyDestination(keys.key_path(name))
        return keys.PendingKey(source, destination, keys.Gnupg(self.config.get("gpg-path", "gpg")))


class InvalidConfigError(sources.Error):
    """Raised when the charm config does not describe a source."""


if __name__ == "__main__":
    main(AptSourcesCharm)
