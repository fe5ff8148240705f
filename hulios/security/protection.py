#!/usr/bin/env python3
import os
import logging
import platform

from hulios.core.errors import Outcome, PrivilegeError
from hulios.utils.commands import run_cmd

ROOT_REQUIRED_MESSAGE = "HULIOS must be run as root."


class SecurityProtection:
    def __init__(self, runner=run_cmd, euid_getter=os.geteuid):
        self.runner = runner
        self.euid_getter = euid_getter
        self.os_type = platform.system().lower()

    def is_root(self):
        return self.euid_getter() == 0

    def ensure_root(self):
        """Fail fast unless running with the superuser's effective uid"""
        if not self.is_root():
            raise PrivilegeError(ROOT_REQUIRED_MESSAGE)

    def protect_file(self, file_path, protect=True):
        """Toggle the immutable attribute on a file.

        Best-effort: a missing chattr, an unsupported filesystem or an absent
        file is logged and reported as a non-fatal outcome.
        """
        action = "protect" if protect else "unprotect"
        flag = "+i" if protect else "-i"

        if self.os_type != "linux":
            logging.warning(f"File protection not supported on this system ({self.os_type})")
            return Outcome.FAILED_NONFATAL

        if protect and not os.path.exists(file_path):
            logging.warning(f"Cannot {action} {file_path}: file does not exist")
            return Outcome.FAILED_NONFATAL

        result = self.runner(["chattr", flag, file_path])
        if result.ok:
            logging.debug(f"{file_path} {action}ed using chattr")
        else:
            logging.debug(f"Failed to {action} {file_path} with chattr: {result.stderr.strip()}")
        return result.outcome
