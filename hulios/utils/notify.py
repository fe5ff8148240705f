#!/usr/bin/env python3
"""Desktop notifications via notify-send.

Works on X11 and Wayland. When HULIOS runs under sudo the notification is
sent as the invoking user with that user's session environment.
"""
import os
import logging

from hulios.core import constants
from hulios.utils.commands import run_cmd

WAYLAND_CANDIDATES = ("wayland-0", "wayland-1", "wayland-2")


class Notifier:
    def __init__(self, app_name=constants.APP_NAME, runner=run_cmd, environ=None):
        self.app_name = app_name
        self.runner = runner
        self.environ = os.environ if environ is None else environ

    def _user_uid(self, username):
        result = self.runner(["id", "-u", username])
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    def _find_wayland_display(self, runtime_dir):
        for candidate in WAYLAND_CANDIDATES:
            if os.path.exists(os.path.join(runtime_dir, candidate)):
                return candidate
        return self.environ.get("WAYLAND_DISPLAY")

    def session_environment(self, username):
        """Environment needed to reach the desktop session of ``username``"""
        uid = self._user_uid(username) or 1000
        runtime_dir = f"/run/user/{uid}"

        env = {
            "XDG_RUNTIME_DIR": runtime_dir,
            "HOME": f"/home/{username}",
        }
        wayland_display = self._find_wayland_display(runtime_dir)
        if wayland_display:
            env["WAYLAND_DISPLAY"] = wayland_display
            signature = self.environ.get("HYPRLAND_INSTANCE_SIGNATURE")
            if signature:
                env["HYPRLAND_INSTANCE_SIGNATURE"] = signature
        env["DISPLAY"] = self.environ.get("DISPLAY", ":0")
        env["DBUS_SESSION_BUS_ADDRESS"] = f"unix:path={runtime_dir}/bus"
        return env

    def build_command(self, title, body, urgency="normal"):
        sudo_user = self.environ.get("SUDO_USER", "")
        if not sudo_user:
            return ["notify-send", "-u", urgency, "-a", self.app_name, title, body]

        cmd = ["sudo", "-u", sudo_user]
        cmd += [f"{key}={value}" for key, value in self.session_environment(sudo_user).items()]
        cmd += ["notify-send", "-u", urgency, "-a", self.app_name, "-i", "network-vpn", title, body]
        return cmd

    def notify(self, title, body, urgency="normal"):
        """Best-effort: failures are logged, never raised"""
        try:
            result = self.runner(self.build_command(title, body, urgency))
        except Exception as e:
            logging.debug(f"Notification '{title}' failed: {e}")
            return False
        if not result.ok:
            logging.debug(f"Notification '{title}' failed: {result.stderr.strip()}")
        return result.ok
