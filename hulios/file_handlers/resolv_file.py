#!/usr/bin/env python3
import os
import shutil
import logging
import contextlib

from hulios.core import constants
from hulios.core.errors import ConfigWriteError

HIJACKED_RESOLV_CONTENT = (
    f"{constants.RESOLV_MARKER}\n"
    "# DO NOT MODIFY - This file is managed by HULIOS\n"
    "# All DNS queries are routed through Tor\n"
    "nameserver 127.0.0.1\n"
    "options edns0 trust-ad ndots:0\n"
)


class ResolvFileHandler:
    def __init__(self, resolv_path=constants.RESOLV_PATH, resolv_backup=constants.RESOLV_BACKUP,
                 candidates=constants.RESOLV_CANDIDATES, stub_path=constants.RESOLVED_STUB,
                 marker=constants.RESOLV_MARKER):
        self.resolv_path = resolv_path
        self.resolv_backup = resolv_backup
        self.candidates = tuple(candidates)
        self.stub_path = stub_path
        self.marker = marker

    def has_backup(self):
        return os.path.exists(self.resolv_backup)

    def _carries_marker(self, path):
        try:
            with open(path, 'r') as f:
                return self.marker in f.read()
        except OSError:
            return False

    def backup_resolv(self):
        """Back up the first existing candidate, unless a backup is already held.

        An existing backup is never overwritten: it is the only copy of the
        configuration from before the first takeover.
        """
        if self.has_backup():
            logging.debug(f"Keeping existing resolver backup {self.resolv_backup}")
            return False

        for source in self.candidates:
            if not os.path.exists(source):
                continue
            if self._carries_marker(source):
                logging.warning(f"Skipping {source}: it is a leftover HULIOS resolv.conf")
                continue
            try:
                shutil.copyfile(source, self.resolv_backup)
                logging.info(f"Backed up {source} to {self.resolv_backup}")
                return True
            except OSError as e:
                logging.error(f"Failed to back up {source}: {e}")
                return False

        logging.warning("No resolver configuration found to back up")
        return False

    def remove_resolv(self):
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.resolv_path)

    def write_hijacked(self):
        """Replace resolv.conf with the loopback-only configuration"""
        self.remove_resolv()
        try:
            with open(self.resolv_path, 'w') as f:
                f.write(HIJACKED_RESOLV_CONTENT)
        except OSError as e:
            raise ConfigWriteError(f"Failed to write {self.resolv_path}: {e}") from e
        logging.info(f"{self.resolv_path} now points to localhost (Tor DNSPort)")

    def is_hijacked(self):
        return self._carries_marker(self.resolv_path)

    def restore_resolv(self):
        """Restore from backup and consume it, or fall back to the resolved stub link"""
        self.remove_resolv()
        if self.has_backup():
            try:
                shutil.copyfile(self.resolv_backup, self.resolv_path)
                os.remove(self.resolv_backup)
                logging.info(f"Restored {self.resolv_path} from backup")
                return True
            except OSError as e:
                logging.error(f"Failed to restore {self.resolv_path} from backup: {e}")
                return False

        try:
            os.symlink(self.stub_path, self.resolv_path)
            logging.info(f"No backup found, linked {self.resolv_path} to {self.stub_path}")
            return True
        except OSError as e:
            logging.error(f"Failed to link {self.resolv_path} to {self.stub_path}: {e}")
            return False
