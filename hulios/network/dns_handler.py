#!/usr/bin/env python3
import os
import logging
import contextlib

from hulios.core import constants
from hulios.core.errors import Outcome
from hulios.file_handlers.resolv_file import ResolvFileHandler
from hulios.security.protection import SecurityProtection
from hulios.utils.commands import run_cmd

# Order matters: mask before stop so socket activation cannot bring it back
NEUTRALIZE_COMMANDS = (
    ["systemctl", "mask", "systemd-resolved"],
    ["systemctl", "stop", "systemd-resolved"],
    ["killall", "systemd-resolved"],
    ["systemctl", "stop", "NetworkManager-dispatcher"],
    ["systemctl", "stop", "dnsmasq"],
    ["systemctl", "mask", "dnsmasq"],
)

RESTORE_COMMANDS = (
    ["systemctl", "unmask", "systemd-resolved"],
    ["systemctl", "unmask", "dnsmasq"],
    ["systemctl", "start", "systemd-resolved"],
    ["systemctl", "start", "NetworkManager-dispatcher"],
)


class DNSHandler:
    """Owns the host's name resolution path.

    Everything except the resolv.conf write is best-effort so that teardown
    always runs to completion.
    """

    def __init__(self, resolv_handler=None, security=None, runner=run_cmd,
                 tor_pid_file=constants.TOR_PID_FILE):
        self.runner = runner
        self.resolv_handler = resolv_handler or ResolvFileHandler()
        self.security = security or SecurityProtection(runner=runner)
        self.tor_pid_file = tor_pid_file

    def _run_best_effort(self, commands):
        outcomes = []
        for cmd in commands:
            result = self.runner(cmd)
            if not result.ok:
                logging.debug(f"Ignoring failure of {' '.join(cmd)}: {result.stderr.strip()}")
            outcomes.append(Outcome.SUCCESS if result.ok else Outcome.FAILED_NONFATAL)
        return Outcome.combine(outcomes)

    def neutralize_native_resolver(self):
        """Mask and kill systemd-resolved and dnsmasq"""
        logging.info("Neutralizing system resolver...")
        return self._run_best_effort(NEUTRALIZE_COMMANDS)

    def restore_native_resolver(self):
        logging.info("Restoring system resolver...")
        return self._run_best_effort(RESTORE_COMMANDS)

    def take_dns_ownership(self):
        """Point resolv.conf at loopback and lock it with the immutable flag.

        Raises ConfigWriteError if resolv.conf cannot be written.
        """
        logging.info("Taking DNS ownership...")
        resolv_path = self.resolv_handler.resolv_path

        self.security.protect_file(resolv_path, protect=False)
        self.resolv_handler.backup_resolv()
        self.resolv_handler.write_hijacked()
        self.security.protect_file(resolv_path, protect=True)
        return Outcome.SUCCESS

    def restore_dns(self):
        logging.info("Restoring DNS configuration...")
        resolv_path = self.resolv_handler.resolv_path

        outcomes = [self.security.protect_file(resolv_path, protect=False)]
        restored = self.resolv_handler.restore_resolv()
        outcomes.append(Outcome.SUCCESS if restored else Outcome.FAILED_NONFATAL)

        with contextlib.suppress(FileNotFoundError):
            os.remove(self.tor_pid_file)

        return Outcome.combine(outcomes)

    def is_dns_hijacked(self):
        return self.resolv_handler.is_hijacked()
